"""
Search intent model and query construction.

The caller sends a structured intent (what to do, to which kind of
resource, with which already-extracted values). This module turns it into
the text that gets embedded and the filter applied inside the vector query.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from playbook_engine.core.search.collection_stores.base import VectorFilter
from playbook_engine.playbooks.lifecycle import SEARCHABLE_STATUSES


@dataclass
class SearchFilters:
    """
    Optional narrowing of a search.

    ``statuses`` can only narrow the searchable set; non-searchable
    statuses are never returned.
    """
    include_all_versions: bool = False
    statuses: List[str] = field(default_factory=list)
    author_classes: List[str] = field(default_factory=list)
    min_quality_score: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SearchFilters":
        data = data or {}
        return cls(
            include_all_versions=bool(data.get("include_all_versions", False)),
            statuses=list(data.get("statuses") or []),
            author_classes=list(data.get("author_classes") or []),
            min_quality_score=data.get("min_quality_score"),
        )

    def merged(self, other: Optional["SearchFilters"]) -> "SearchFilters":
        """Combine intent-level filters with request-level filters (request wins when set)."""
        if other is None:
            return self
        return SearchFilters(
            include_all_versions=self.include_all_versions or other.include_all_versions,
            statuses=other.statuses or self.statuses,
            author_classes=other.author_classes or self.author_classes,
            min_quality_score=(
                other.min_quality_score if other.min_quality_score is not None else self.min_quality_score
            ),
        )


@dataclass
class SearchIntent:
    action: str
    cloud_provider: Optional[str] = None
    resource_types: List[str] = field(default_factory=list)
    filters: SearchFilters = field(default_factory=SearchFilters)
    use_case: Optional[str] = None
    keywords: List[str] = field(default_factory=list)
    extracted_parameters: Dict[str, Any] = field(default_factory=dict)
    user_context: Dict[str, Any] = field(default_factory=dict)
    estate: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchIntent":
        return cls(
            action=data.get("action", ""),
            cloud_provider=data.get("cloud_provider") or None,
            resource_types=list(data.get("resource_types") or []),
            filters=SearchFilters.from_dict(data.get("filters")),
            use_case=data.get("use_case") or None,
            keywords=list(data.get("keywords") or []),
            extracted_parameters=dict(data.get("extracted_parameters") or {}),
            user_context=dict(data.get("user_context") or {}),
            estate=dict(data.get("estate") or {}),
        )


def build_query_text(intent: SearchIntent) -> str:
    """
    Enriched query text: action, resource types, use case, keywords.

    Mirrors the fields embedded for playbooks so both sides land in the
    same region of the embedding space.
    """
    parts = [intent.action.strip()]
    if intent.resource_types:
        parts.append("Resource types: " + ", ".join(intent.resource_types))
    if intent.use_case:
        parts.append("Use case: " + intent.use_case.strip())
    if intent.keywords:
        parts.append("Keywords: " + ", ".join(intent.keywords))
    return "\n".join(p for p in parts if p)


def searchable_statuses(filters: Optional[SearchFilters] = None) -> List[str]:
    statuses = set(SEARCHABLE_STATUSES)
    if filters and filters.statuses:
        statuses &= set(filters.statuses)
    return sorted(statuses)


def build_vector_filter(intent: SearchIntent, filters: Optional[SearchFilters] = None) -> VectorFilter:
    return VectorFilter(
        cloud_provider=intent.cloud_provider,
        resource_types=list(intent.resource_types),
        statuses=searchable_statuses(filters),
    )
