"""
Collection store adapter ABC and data classes.

Defines the interface every vector index backend implements. The engine
keeps one collection for the global library and one per tenant; each entry
is one playbook version keyed ``<playbook_id>-<version>`` with its full
definition and ranking metadata as payload.
"""

import hashlib
import string
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

_SLUG_CHARS = set(string.ascii_lowercase + string.digits)


@dataclass
class VectorEntry:
    """Entry ready to be stored in a collection."""

    id: str
    vector: List[float]
    payload: Dict[str, Any]


@dataclass
class VectorFilter:
    """
    Filter applied inside the vector query, before top-K.

    Empty fields do not filter.
    """

    cloud_provider: Optional[str] = None
    resource_types: List[str] = field(default_factory=list)
    statuses: List[str] = field(default_factory=list)


@dataclass
class VectorHit:
    """Entry returned from a collection search. ``score`` is cosine similarity."""

    id: str
    score: float
    payload: Dict[str, Any]


def collection_name_for_scope(scope: str, global_name: str, tenant_prefix: str) -> str:
    """
    Collection for a scope.

    Tenant collections are ``<prefix><slug>_<digest>``: the slug keeps the
    name readable and the digest of the exact tenant id keeps ids that slug
    alike (``acme-1``, ``ACME_1``) in separate collections.
    """
    if scope == "global":
        return global_name
    slug = "".join(ch if ch in _SLUG_CHARS else "_" for ch in scope.lower())[:20]
    digest = hashlib.sha1(scope.encode("utf-8")).hexdigest()[:12]
    return f"{tenant_prefix}{slug}_{digest}"


class CollectionStoreAdapter(ABC):
    """Abstract base class for vector index backends."""

    @abstractmethod
    async def create_collection(self, name: str, dimensions: int) -> bool:
        """Create the collection if missing. Returns True if it was created."""

    @abstractmethod
    async def collection_exists(self, name: str) -> bool:
        """Whether the collection exists."""

    @abstractmethod
    async def upsert(self, collection: str, entries: List[VectorEntry]) -> int:
        """Insert or replace entries by id. Returns the count written."""

    @abstractmethod
    async def search(
        self,
        collection: str,
        query_vector: List[float],
        vector_filter: Optional[VectorFilter] = None,
        limit: int = 10,
    ) -> List[VectorHit]:
        """Top ``limit`` entries by cosine similarity that pass the filter."""

    @abstractmethod
    async def delete(self, collection: str, ids: List[str]) -> int:
        """Delete entries by id. Returns count deleted."""

    @abstractmethod
    async def update_metadata(self, collection: str, entry_id: str, metadata: Dict[str, Any]) -> bool:
        """Merge ``metadata`` into an entry's payload. Returns False if the entry is missing."""

    @abstractmethod
    async def count(self, collection: str) -> int:
        """Count entries in a collection."""
