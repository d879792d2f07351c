"""Health endpoint covering the database, Redis, object storage and the LLM."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Query

from playbook_engine.config import settings
from playbook_engine.core.llm.llm_adapter import llm_adapter
from playbook_engine.core.shared.database_service import database_service
from playbook_engine.core.shared.lock_service import lock_service
from playbook_engine.core.storage.minio_service import get_minio_service

logger = logging.getLogger("playbook_engine.api.health")

router = APIRouter(tags=["System"])


@router.get("/health")
async def health_check(
    check_llm: bool = Query(False, description="Also send a test completion to the LLM endpoint"),
) -> Dict[str, Any]:
    """Component health. Overall status is 'degraded' when any required component is down."""
    components: Dict[str, Any] = {}

    components["database"] = await database_service.health_check()

    try:
        redis_ok = await lock_service.ping()
        components["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        components["redis"] = {"status": "unhealthy", "error": str(e)}

    storage = get_minio_service()
    if storage is None:
        components["object_storage"] = {"status": "disabled"}
    else:
        connected, buckets, error = await asyncio.to_thread(storage.check_health)
        components["object_storage"] = {
            "status": "healthy" if connected else "unhealthy",
            "buckets": buckets or [],
            "error": error,
        }

    if check_llm:
        llm = await llm_adapter.test_connection()
        components["llm"] = {"status": "healthy" if llm.get("connected") else "unhealthy", **llm}
    else:
        components["llm"] = {"status": "configured" if llm_adapter.is_available else "not_configured"}

    required = ("database", "redis", "object_storage")
    degraded = any(components[name]["status"] == "unhealthy" for name in required)
    return {
        "status": "degraded" if degraded else "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": settings.api_version,
        "components": components,
    }
