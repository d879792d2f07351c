"""
Playbook search endpoint.

Search never fails the request: provider outages come back as an empty or
degraded result set with warnings.
"""

import logging

from fastapi import APIRouter, Depends

from playbook_engine.api.v1.schemas import SearchRequest, SearchResponseModel
from playbook_engine.core.search.playbook_search_service import PlaybookSearchService
from playbook_engine.dependencies import get_search_service

logger = logging.getLogger("playbook_engine.api.search")

router = APIRouter(prefix="/playbooks", tags=["Search"])


@router.post(
    "/search",
    response_model=SearchResponseModel,
    summary="Search playbooks",
    description="Rank tenant and global playbooks for an intent and resolve them into executable plans.",
)
async def search_playbooks(
    request: SearchRequest,
    service: PlaybookSearchService = Depends(get_search_service),
):
    response = await service.search(
        request.intent.to_domain(),
        tenant_id=request.tenant_id,
        filters=request.domain_filters(),
        limit=request.limit,
    )
    return response.to_dict()
