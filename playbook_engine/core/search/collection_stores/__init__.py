"""
Collection store adapters - pluggable backends for the playbook vector index.

The engine keeps one collection for the global library and one per tenant.
The pgvector store is the production backend; tests use an in-memory double
implementing the same interface.

Usage:
    from playbook_engine.core.search.collection_stores import (
        CollectionStoreAdapter,
        PgVectorCollectionStore,
        VectorEntry,
        VectorFilter,
        VectorHit,
    )
"""

from .base import (
    CollectionStoreAdapter,
    VectorEntry,
    VectorFilter,
    VectorHit,
    collection_name_for_scope,
)
from .pgvector_store import PgVectorCollectionStore

__all__ = [
    "CollectionStoreAdapter",
    "PgVectorCollectionStore",
    "VectorEntry",
    "VectorFilter",
    "VectorHit",
    "collection_name_for_scope",
]
