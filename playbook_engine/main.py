# ============================================================================
# Playbook Engine - FastAPI Application Entry Point
# ============================================================================
"""
Main FastAPI application module for the Playbook Engine.

This module sets up the FastAPI application with:
- CORS middleware configuration
- Startup/shutdown handlers (database tables, object storage bucket, locks)
- Exception handlers mapping engine errors to JSON responses
- API router integration under /api/v1

Usage:
    uvicorn playbook_engine.main:app --host 0.0.0.0 --port 8000 --reload
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.v1 import api_router
from .config import settings
from .core.errors import (
    AssetInUse,
    AssetNotFound,
    ConcurrentSyncRejected,
    CyclicReferenceDetected,
    InvalidMappingExpression,
    InvalidStatusTransition,
    PlaybookEngineError,
    QualityThresholdNotMet,
    ReferenceDepthExceeded,
    ValidationFailed,
    VersionConflict,
)
from .core.shared.config_loader import config_loader
from .core.shared.database_service import database_service
from .core.shared.lock_service import lock_service

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("playbook_engine.main")

# ============================================================================
# APPLICATION INITIALIZATION
# ============================================================================

app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=(
        "Playbook Engine API\n\n"
        "Stores versioned operational playbooks, keeps a vector index of them in sync, "
        "and ranks, resolves and explains them for a caller's intent."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# ============================================================================
# APPLICATION EVENT HANDLERS
# ============================================================================


@app.on_event("startup")
async def startup_event() -> None:
    logger.info(f"Starting Playbook Engine {settings.api_version} (debug={settings.debug})")
    for error in config_loader.validate():
        logger.error(f"Configuration: {error}")
    await database_service.init_db()

    from .dependencies import get_reference_store

    try:
        await get_reference_store().ensure_ready()
    except Exception as e:
        logger.warning(f"Reference Store not ready at startup: {e}")

    from .core.llm.llm_service import llm_service
    logger.info(f"LLM service: {'available' if llm_service.is_available else 'unavailable'}")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    logger.info("Shutting down Playbook Engine")
    await lock_service.close()
    await database_service.close()


# ============================================================================
# ERROR HANDLERS
# ============================================================================

_STATUS_CODES = (
    (AssetNotFound, 404),
    (VersionConflict, 409),
    (AssetInUse, 409),
    (InvalidStatusTransition, 409),
    (ValidationFailed, 422),
    (QualityThresholdNotMet, 422),
    (InvalidMappingExpression, 422),
    (ReferenceDepthExceeded, 422),
    (CyclicReferenceDetected, 422),
    (ConcurrentSyncRejected, 423),
)


def status_code_for(exc: PlaybookEngineError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


@app.exception_handler(PlaybookEngineError)
async def engine_exception_handler(request: Request, exc: PlaybookEngineError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


# ============================================================================
# ROUTES
# ============================================================================

app.include_router(api_router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
async def root():
    return {"name": settings.api_title, "version": settings.api_version, "docs": "/docs"}
