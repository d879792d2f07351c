"""
Celery tasks for the Playbook Engine.

Each task runs its coroutine with ``asyncio.run``; the database engine uses
NullPool inside workers so no connection outlives its event loop.
"""
import asyncio
import logging
from typing import Any, Dict, List

from celery import shared_task

from playbook_engine.celery_app import app as celery_app  # noqa: F401
from playbook_engine.core.errors import ConcurrentSyncRejected
from playbook_engine.core.shared.lock_service import lock_service

logger = logging.getLogger("playbook_engine.tasks")


async def _sync_all() -> List[Dict[str, Any]]:
    from playbook_engine.dependencies import get_sync_service

    try:
        reports = await get_sync_service().sync_all()
        return [r.to_dict() for r in reports]
    finally:
        await lock_service.close()


async def _sync_scope(scope: str, full: bool = False) -> Dict[str, Any]:
    from playbook_engine.core.sync.sync_service import FULL_RESCAN
    from playbook_engine.dependencies import get_sync_service

    try:
        _, report = await get_sync_service().sync_scope(scope, FULL_RESCAN if full else None)
        return report.to_dict()
    finally:
        await lock_service.close()


@shared_task(bind=True, name="playbook_engine.tasks.sync_all_collections_task")
def sync_all_collections_task(self) -> Dict[str, Any]:
    """
    Periodic sync of the global collection and every tenant collection.

    Returns:
        Summary with one report per synced collection
    """
    logger.info("Starting periodic sync of all collections")
    reports = asyncio.run(_sync_all())
    failed = sum(len(r["failures"]) for r in reports)
    logger.info(f"Periodic sync finished: {len(reports)} collections, {failed} object failures")
    return {"collections": len(reports), "failures": failed, "reports": reports}


@shared_task(bind=True, name="playbook_engine.tasks.sync_scope_task")
def sync_scope_task(self, scope: str, full: bool = False) -> Dict[str, Any]:
    """Sync one scope on demand (after a publish or from the API)."""
    logger.info(f"Starting sync of scope {scope}")
    try:
        return asyncio.run(_sync_scope(scope, full))
    except ConcurrentSyncRejected as e:
        logger.info(f"Sync of {scope} skipped: {e.message}")
        return {"scope": scope, "skipped": True, "reason": e.message}
