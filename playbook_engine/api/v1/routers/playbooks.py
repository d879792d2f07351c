"""
Playbook publication and lifecycle endpoints.

Domain errors (version conflicts, invalid transitions, assets in use)
propagate to the exception handlers registered in ``main.py``.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from playbook_engine.api.v1.schemas import (
    ExecutionReport,
    OkResponse,
    PublishRequest,
    PublishResponse,
    StatusUpdateRequest,
    VersionInfo,
)
from playbook_engine.core.storage.reference_store import GLOBAL_SCOPE
from playbook_engine.dependencies import get_lifecycle_manager, get_publisher
from playbook_engine.playbooks.lifecycle import LifecycleManager
from playbook_engine.playbooks.publisher import PlaybookPublisher

logger = logging.getLogger("playbook_engine.api.playbooks")

router = APIRouter(prefix="/playbooks", tags=["Playbooks"])


@router.post(
    "/publish",
    response_model=PublishResponse,
    summary="Publish a playbook draft",
    description=(
        "Validate a draft, score it, and store it in the tenant (or global) library. "
        "Rejected drafts return status 'rejected' with feedback."
    ),
)
async def publish_playbook(
    request: PublishRequest,
    publisher: PlaybookPublisher = Depends(get_publisher),
):
    result = await publisher.publish(
        request.tenant_id,
        request.playbook_draft,
        request.referenced_script_uploads,
        actor=request.actor,
    )
    return result.to_dict()


@router.post("/status", response_model=OkResponse, summary="Change the status of a playbook version")
async def update_status(
    request: StatusUpdateRequest,
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    record = await lifecycle.transition(
        request.tenant_id or GLOBAL_SCOPE,
        request.playbook_id,
        request.version,
        request.new_status,
        reason=request.reason,
        actor=request.actor,
    )
    return OkResponse(ok=True, status=record.status)


@router.post("/executions", response_model=OkResponse, summary="Report an execution outcome")
async def report_execution(
    report: ExecutionReport,
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    """Feeds success rate, usage and the broken-after-N-failures rule."""
    record = await lifecycle.record_execution(
        report.tenant_id or GLOBAL_SCOPE, report.playbook_id, report.version, report.success
    )
    return OkResponse(ok=True, status=record.status)


@router.get("/{playbook_id}/versions", response_model=List[VersionInfo], summary="List versions of a playbook")
async def list_versions(
    playbook_id: str,
    tenant_id: Optional[str] = Query(None, description="Tenant scope; omit for the global library"),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    records = await lifecycle.list_versions(tenant_id or GLOBAL_SCOPE, playbook_id)
    return [
        VersionInfo(
            playbook_id=r.playbook_id,
            version=r.version,
            scope=r.scope,
            status=r.status,
            quality_score=r.quality_score,
            execution_count=r.execution_count or 0,
            success_count=r.success_count or 0,
            consecutive_failures=r.consecutive_failures or 0,
        )
        for r in records
    ]


@router.delete("/{playbook_id}/versions/{version}", response_model=OkResponse, summary="Delete a playbook version")
async def delete_version(
    playbook_id: str,
    version: str,
    tenant_id: Optional[str] = Query(None, description="Tenant scope; omit for the global library"),
    actor: Optional[str] = Query(None),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    await lifecycle.delete_version(tenant_id or GLOBAL_SCOPE, playbook_id, version, actor=actor)
    return OkResponse(ok=True, status="archived")
