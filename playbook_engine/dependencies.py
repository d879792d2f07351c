# playbook_engine/dependencies.py
"""
Service wiring shared by the API and the Celery worker.

Each getter builds its service once per process from config.yml / env
settings. FastAPI routes receive them through ``Depends``; tests replace
them with ``app.dependency_overrides``.

Usage:
    from fastapi import Depends
    from playbook_engine.dependencies import get_search_service

    @router.post("/search")
    async def search(service: PlaybookSearchService = Depends(get_search_service)):
        ...
"""

import logging
from functools import lru_cache

from playbook_engine.core.llm.llm_service import llm_service
from playbook_engine.core.search.collection_stores.pgvector_store import PgVectorCollectionStore
from playbook_engine.core.search.embedding_service import embedding_service
from playbook_engine.core.search.playbook_search_service import PlaybookSearchService
from playbook_engine.core.search.reranker import LLMReranker
from playbook_engine.core.shared.config_loader import config_loader
from playbook_engine.core.shared.database_service import database_service
from playbook_engine.core.shared.lock_service import lock_service
from playbook_engine.core.storage.minio_service import get_minio_service
from playbook_engine.core.storage.reference_store import ReferenceStore
from playbook_engine.core.sync.marker_store import SyncStateStore
from playbook_engine.core.sync.sync_service import SyncService
from playbook_engine.playbooks.lifecycle import LifecycleManager
from playbook_engine.playbooks.publisher import PlaybookPublisher

logger = logging.getLogger("playbook_engine.dependencies")


@lru_cache()
def get_reference_store() -> ReferenceStore:
    storage = get_minio_service()
    if storage is None:
        raise RuntimeError("Object storage is disabled (minio.enabled: false); the Reference Store needs it")
    return ReferenceStore(storage, storage.bucket_playbooks)


@lru_cache()
def get_vector_store() -> PgVectorCollectionStore:
    return PgVectorCollectionStore(database_service)


@lru_cache()
def get_lifecycle_manager() -> LifecycleManager:
    return LifecycleManager(
        database_service,
        vector_store=get_vector_store(),
        reference_store=get_reference_store(),
        config=config_loader.get_lifecycle_config(),
        sync_config=config_loader.get_sync_config(),
    )


@lru_cache()
def get_sync_service() -> SyncService:
    return SyncService(
        reference_store=get_reference_store(),
        vector_store=get_vector_store(),
        embedding_service=embedding_service,
        state=SyncStateStore(database_service),
        lifecycle=get_lifecycle_manager(),
        lock_service=lock_service,
        config=config_loader.get_sync_config(),
        search_config=config_loader.get_search_config(),
    )


@lru_cache()
def get_search_service() -> PlaybookSearchService:
    search_config = config_loader.get_search_config()
    reranker = LLMReranker(llm_service, search_config) if search_config.rerank_enabled else None
    if reranker is not None and not llm_service.is_available:
        logger.warning("LLM client not configured; search results will use composite order only")
    return PlaybookSearchService(
        vector_store=get_vector_store(),
        reference_store=get_reference_store(),
        embedding_service=embedding_service,
        reranker=reranker,
        search_config=search_config,
        quality_config=config_loader.get_quality_config(),
        sync_config=config_loader.get_sync_config(),
    )


@lru_cache()
def get_publisher() -> PlaybookPublisher:
    return PlaybookPublisher(
        reference_store=get_reference_store(),
        lifecycle=get_lifecycle_manager(),
        lock_service=lock_service,
        quality_config=config_loader.get_quality_config(),
    )
