from fastapi import APIRouter

# Aggregate all v1 routers here
from .routers import health, playbooks, search, sync

api_router = APIRouter()
api_router.include_router(search.router)
api_router.include_router(playbooks.router)
api_router.include_router(sync.router)
api_router.include_router(health.router)

__all__ = ["api_router"]
