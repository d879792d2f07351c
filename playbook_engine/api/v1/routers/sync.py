"""
Explicit sync trigger.

The periodic beat schedule keeps every collection current; this endpoint
lets operators (or a publisher that cannot wait) sync one scope now.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends

from playbook_engine.api.v1.schemas import SyncTriggerRequest
from playbook_engine.core.sync.sync_service import FULL_RESCAN, SyncService
from playbook_engine.dependencies import get_sync_service

logger = logging.getLogger("playbook_engine.api.sync")

router = APIRouter(prefix="/sync", tags=["Sync"])


@router.post(
    "/{scope}",
    summary="Sync one scope into its vector collection",
    description=(
        "Scope is 'global' or a tenant id. Runs inline and returns the sync report, "
        "or queues a Celery task when background=true. A sync already running for the "
        "same collection is rejected with 423."
    ),
)
async def trigger_sync(
    scope: str,
    request: Optional[SyncTriggerRequest] = Body(None),
    service: SyncService = Depends(get_sync_service),
) -> Dict[str, Any]:
    request = request or SyncTriggerRequest()

    if request.background:
        from playbook_engine.tasks import sync_scope_task

        task = sync_scope_task.apply_async(kwargs={"scope": scope, "full": request.full}, queue="sync")
        logger.info(f"Queued sync of scope {scope}: task={task.id}")
        return {"scope": scope, "queued": True, "task_id": task.id}

    _, report = await service.sync_scope(scope, FULL_RESCAN if request.full else None)
    return report.to_dict()
