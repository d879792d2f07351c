# ============================================================================
# playbook_engine/core/search/playbook_search_service.py
# ============================================================================
"""
Search & Ranking Engine.

    intent
      -> enriched query text -> embedding
      -> global + tenant collections (status/provider/resource filter in-query, top-K each)
      -> merge by playbook_id (best version unless include_all_versions)
      -> composite score
      -> LLM re-rank of the top N (best effort)
      -> resolve + parameter pre-fill of each returned result

Search is read-only and never raises to the caller. Failures are logged;
a failed re-rank sets ``degraded`` on the response and a result that cannot
be resolved is dropped.

Usage:
    service = PlaybookSearchService(vector_store, reference_store, embedding_service, reranker)
    response = await service.search(intent, tenant_id="tenant-a", limit=5)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from playbook_engine.core.errors import PlaybookEngineError, RerankingDegraded
from playbook_engine.core.models.config_models import QualityConfig, SearchConfig, SyncConfig
from playbook_engine.core.search.collection_stores.base import (
    CollectionStoreAdapter,
    VectorFilter,
    collection_name_for_scope,
)
from playbook_engine.core.search.parameter_prefill import prefill_parameters
from playbook_engine.core.search.query_builder import (
    SearchFilters,
    SearchIntent,
    build_query_text,
    build_vector_filter,
)
from playbook_engine.core.search.ranking import (
    PRECEDENCE_ORDER,
    Candidate,
    composite_score,
    precedence_tier,
    success_rate_of,
)
from playbook_engine.core.search.reranker import LLMReranker
from playbook_engine.core.storage.reference_store import GLOBAL_SCOPE, ReferenceStore
from playbook_engine.playbooks.catalog import AssetCatalog
from playbook_engine.playbooks.lifecycle import SEARCHABLE_STATUSES, policy_for
from playbook_engine.playbooks.models import Playbook
from playbook_engine.playbooks.resolver import PlaybookResolver
from playbook_engine.playbooks.versioning import version_key

logger = logging.getLogger("playbook_engine.search")


@dataclass
class RankedPlaybook:
    rank: int
    playbook_id: str
    version: str
    source: str  # tenant | global
    confidence: float
    reason: str
    metadata: Dict[str, Any]
    parameters: List[Dict[str, Any]]
    explain_plan: Dict[str, Any]
    steps: List[Dict[str, Any]]
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rank": self.rank,
            "playbook_id": self.playbook_id,
            "version": self.version,
            "source": self.source,
            "confidence": self.confidence,
            "reason": self.reason,
            "metadata": self.metadata,
            "parameters": self.parameters,
            "explain_plan": self.explain_plan,
            "steps": self.steps,
            "warnings": list(self.warnings),
        }


@dataclass
class SearchResponse:
    results: List[RankedPlaybook] = field(default_factory=list)
    degraded: bool = False
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "degraded": self.degraded,
            "warnings": list(self.warnings),
        }


def status_warnings(playbook_id: str, version: str, status: str) -> List[str]:
    warning = policy_for(status).warning
    if warning == "strong_warning":
        return [
            f"{playbook_id}@{version} is pending review and has not been approved. "
            "Review every step before running it."
        ]
    if warning == "warning":
        return [f"{playbook_id}@{version} is {status.replace('_', ' ')}; a newer version may be preferable."]
    return []


class PlaybookSearchService:
    """
    Args:
        vector_store: Index populated by the Sync Engine
        reference_store: Used to load nested playbooks and scripts during resolution
        embedding_service: Provides ``get_embedding(text)``
        reranker: LLM re-ranker; None disables the stage
    """

    def __init__(
        self,
        vector_store: CollectionStoreAdapter,
        reference_store: Optional[ReferenceStore],
        embedding_service,
        reranker: Optional[LLMReranker] = None,
        search_config: Optional[SearchConfig] = None,
        quality_config: Optional[QualityConfig] = None,
        sync_config: Optional[SyncConfig] = None,
    ):
        self.vector_store = vector_store
        self.reference_store = reference_store
        self.embedding_service = embedding_service
        self.reranker = reranker
        self.config = search_config or SearchConfig()
        self.quality_config = quality_config or QualityConfig()
        self.sync_config = sync_config or SyncConfig()

    def collection_for(self, scope: str) -> str:
        return collection_name_for_scope(
            scope, self.sync_config.global_collection, self.sync_config.tenant_collection_prefix
        )

    async def search(
        self,
        intent: SearchIntent,
        tenant_id: Optional[str] = None,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
    ) -> SearchResponse:
        """Find, rank and resolve playbooks for an intent."""
        limit = limit or self.config.default_limit
        filters = intent.filters.merged(filters)
        response = SearchResponse()

        vector_filter = build_vector_filter(intent, filters)
        if not vector_filter.statuses:
            # Requested statuses are all unsearchable
            return response

        query_text = build_query_text(intent)
        try:
            query_vector = await self.embedding_service.get_embedding(query_text)
        except Exception as e:
            logger.error(f"Embedding the search intent failed: {e}", exc_info=True)
            response.warnings.append("Search is temporarily unavailable: the embedding provider failed")
            return response

        candidates = await self._candidates(query_vector, vector_filter, tenant_id, filters, response)
        if not candidates:
            return response

        candidates = self._merge(candidates, filters.include_all_versions)
        candidates.sort(key=self._order_key)

        if self.reranker is not None and self.config.rerank_enabled:
            top_n = self.config.rerank_top_n
            budget = self.config.rerank_budget()
            failure = None
            try:
                reranked = await asyncio.wait_for(
                    self.reranker.rerank(intent, candidates[:top_n]), timeout=budget
                )
                candidates = reranked + candidates[top_n:]
            except asyncio.TimeoutError:
                failure = f"stage exceeded its {budget}s deadline"
            except RerankingDegraded as e:
                failure = e.message
            if failure is not None:
                logger.warning(f"Re-rank failed, returning composite order (degraded mode): {failure}")
                response.degraded = True
                response.warnings.append("Results are in composite order; the re-rank stage was unavailable")

        response.results = await self._resolve_results(candidates, intent, limit)
        logger.info(
            f"Search '{intent.action}' tenant={tenant_id or '-'}: "
            f"{len(candidates)} candidates, {len(response.results)} results"
            + (" (degraded)" if response.degraded else "")
        )
        return response

    # -------------------------------------------------------------------------
    # Candidates
    # -------------------------------------------------------------------------

    async def _query_collection(
        self,
        scope: str,
        query_vector: List[float],
        vector_filter: VectorFilter,
    ) -> Tuple[str, list]:
        collection = self.collection_for(scope)
        if not await self.vector_store.collection_exists(collection):
            return scope, []
        hits = await self.vector_store.search(
            collection, query_vector, vector_filter, limit=self.config.candidate_top_k
        )
        return scope, hits

    async def _candidates(
        self,
        query_vector: List[float],
        vector_filter: VectorFilter,
        tenant_id: Optional[str],
        filters: SearchFilters,
        response: SearchResponse,
    ) -> List[Candidate]:
        scopes = [GLOBAL_SCOPE]
        if tenant_id and tenant_id != GLOBAL_SCOPE:
            scopes.append(tenant_id)

        results = await asyncio.gather(
            *(self._query_collection(scope, query_vector, vector_filter) for scope in scopes),
            return_exceptions=True,
        )

        candidates: List[Candidate] = []
        seen = set()
        for scope, result in zip(scopes, results):
            if isinstance(result, Exception):
                logger.error(f"Vector search failed for scope {scope}: {result}", exc_info=result)
                response.warnings.append(f"The {'tenant' if scope != GLOBAL_SCOPE else 'global'} library could not be searched")
                continue
            _, hits = result
            for hit in hits:
                payload = hit.payload
                if payload.get("scope") != scope:
                    logger.warning(f"Ignoring {hit.id}: owned by scope {payload.get('scope')!r}, not {scope!r}")
                    continue
                if payload.get("status") not in SEARCHABLE_STATUSES:
                    continue
                if filters.author_classes and payload.get("author_class") not in filters.author_classes:
                    continue
                if filters.min_quality_score is not None and (payload.get("quality_score") or 0) < filters.min_quality_score:
                    continue
                if (scope, hit.id) in seen:
                    continue
                seen.add((scope, hit.id))

                tier = payload.get("precedence") or precedence_tier(scope, payload.get("author_class"))
                candidates.append(Candidate(
                    entry_id=hit.id,
                    scope=scope,
                    tier=tier,
                    similarity=hit.score,
                    payload=payload,
                    breakdown=composite_score(
                        hit.score, payload, tier, self.config.weights, self.quality_config
                    ),
                ))
        return candidates

    @staticmethod
    def _order_key(candidate: Candidate):
        return (
            -candidate.score,
            PRECEDENCE_ORDER.get(candidate.tier, len(PRECEDENCE_ORDER)),
            candidate.playbook_id,
            tuple(-part for part in version_key(candidate.version)[:3]),
        )

    def _merge(self, candidates: List[Candidate], include_all_versions: bool) -> List[Candidate]:
        """Keep the best-scoring entry per playbook_id."""
        if include_all_versions:
            return list(candidates)
        best: Dict[str, Candidate] = {}
        for candidate in candidates:
            current = best.get(candidate.playbook_id)
            if current is None or self._order_key(candidate) < self._order_key(current):
                best[candidate.playbook_id] = candidate
        return list(best.values())

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    async def _resolve_results(
        self,
        candidates: List[Candidate],
        intent: SearchIntent,
        limit: int,
    ) -> List[RankedPlaybook]:
        results: List[RankedPlaybook] = []
        for candidate in candidates:
            if len(results) >= limit:
                break
            try:
                result = await self._resolve(candidate, intent, rank=len(results) + 1)
            except PlaybookEngineError as e:
                logger.warning(
                    f"Dropping {candidate.playbook_id}@{candidate.version} from results: {e.message}"
                )
                continue
            except Exception as e:
                logger.error(
                    f"Unexpected error resolving {candidate.playbook_id}@{candidate.version}: {e}",
                    exc_info=True,
                )
                continue
            results.append(result)
        return results

    async def _resolve(self, candidate: Candidate, intent: SearchIntent, rank: int) -> RankedPlaybook:
        playbook = Playbook.from_dict(candidate.payload)
        catalog = AssetCatalog()
        catalog.add_playbook(candidate.scope, playbook)
        if self.reference_store is not None:
            await catalog.prefetch_playbook(
                self.reference_store,
                candidate.scope,
                playbook.playbook_id,
                playbook.version,
                max_depth=self.quality_config.max_reference_depth,
            )

        slots = prefill_parameters(playbook, intent.extracted_parameters, intent.user_context, intent.estate)
        plan = PlaybookResolver(catalog, self.quality_config.max_reference_depth).resolve(
            candidate.scope,
            playbook.playbook_id,
            playbook.version,
            slots=slots,
            user_context=intent.user_context,
            estate=intent.estate,
        )

        payload = candidate.payload
        status = payload.get("status", "")
        quality_score = payload.get("quality_score")
        warnings = status_warnings(playbook.playbook_id, playbook.version, status)
        confidence = candidate.confidence
        if confidence is None:
            confidence = max(0.0, min(1.0, candidate.similarity))
        reason = candidate.reason or (
            f"Similarity {candidate.similarity:.2f}, {candidate.tier.replace('_', ' ')}, {status}"
        )

        metadata = {
            "name": playbook.name,
            "description": playbook.description,
            "status": status,
            "author_class": playbook.author_class.value,
            "precedence": candidate.tier,
            "scope": candidate.scope,
            "cloud_providers": list(playbook.cloud_providers),
            "resource_types": list(playbook.resource_types),
            "prerequisites": list(playbook.prerequisites),
            "estimated_impact": playbook.estimated_impact,
            "success_rate": round(success_rate_of(payload), 4),
            "execution_count": int(payload.get("execution_count") or 0),
            "quality_score": quality_score,
            "featured": quality_score is not None and quality_score >= self.quality_config.featured_score,
            "updated_at": payload.get("updated_at"),
            "similarity": round(candidate.similarity, 4),
            "score": candidate.breakdown.to_dict(),
            "reranked": candidate.reranked,
            "estimated_duration_seconds": plan.total_estimated_duration_seconds,
            "required_permissions": plan.required_permissions,
            "needs_input": [s.name for s in plan.parameters if s.needs_input],
        }
        return RankedPlaybook(
            rank=rank,
            playbook_id=playbook.playbook_id,
            version=playbook.version,
            source="global" if candidate.scope == GLOBAL_SCOPE else "tenant",
            confidence=round(confidence, 4),
            reason=reason,
            metadata=metadata,
            parameters=[s.to_dict() for s in plan.parameters],
            explain_plan=plan.explain_plan.to_dict(),
            steps=[s.to_dict() for s in plan.steps],
            warnings=warnings,
        )
