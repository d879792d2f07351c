"""
Composite ranking.

    score = similarity
          + precedence_bonus          tenant_trusted > curated > experimental
          + status_bonus              full (active/approved) > partial > minimal
          + success_rate * k1
          + min(log1p(execution_count) * k2, execution_cap)
          + recency_bonus             halves every ``recency_half_life_days``
          + quality_bonus             featured > normal

All weights come from ``search.weights`` in config.yml.
"""

import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from playbook_engine.core.models.config_models import QualityConfig, RankingWeights
from playbook_engine.playbooks.lifecycle import policy_for

TENANT_TRUSTED = "tenant_trusted"
CURATED = "curated"
EXPERIMENTAL = "experimental"

PRECEDENCE_ORDER = {TENANT_TRUSTED: 0, CURATED: 1, EXPERIMENTAL: 2}


def precedence_tier(scope: str, author_class: Optional[str]) -> str:
    """
    Precedence tier of an index entry.

    Tenant entries are trusted unless their author marked them experimental.
    In the global library only curated (and tenant-promoted) playbooks count
    as curated; community and experimental contributions rank last.
    """
    if scope != "global":
        return EXPERIMENTAL if author_class == "experimental" else TENANT_TRUSTED
    if author_class in ("curated", "tenant", None, ""):
        return CURATED
    return EXPERIMENTAL


def precedence_bonus(tier: str, weights: RankingWeights) -> float:
    return {
        TENANT_TRUSTED: weights.precedence_tenant_trusted,
        CURATED: weights.precedence_curated,
        EXPERIMENTAL: weights.precedence_experimental,
    }.get(tier, 0.0)


def status_bonus(status: str, weights: RankingWeights) -> float:
    tier = policy_for(status).bonus_tier
    return {
        "full": weights.status_full,
        "partial": weights.status_partial,
        "minimal": weights.status_minimal,
    }.get(tier, 0.0)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def recency_bonus(updated_at: Any, weights: RankingWeights, now: Optional[datetime] = None) -> float:
    updated = _parse_timestamp(updated_at)
    if updated is None:
        return 0.0
    now = now or datetime.now(timezone.utc)
    age_days = max(0.0, (now - updated).total_seconds() / 86400.0)
    return weights.recency * 0.5 ** (age_days / weights.recency_half_life_days)


def quality_bonus(quality_score: Optional[float], weights: RankingWeights, quality: QualityConfig) -> float:
    if quality_score is None:
        return 0.0
    if quality_score >= quality.featured_score:
        return weights.quality_featured
    if quality_score >= quality.warning_below:
        return weights.quality_normal
    return 0.0


def success_rate_of(payload: Dict[str, Any]) -> float:
    executions = int(payload.get("execution_count") or 0)
    if not executions:
        return 0.0
    return min(1.0, int(payload.get("success_count") or 0) / executions)


@dataclass
class ScoreBreakdown:
    similarity: float
    precedence: float
    status: float
    success_rate: float
    executions: float
    recency: float
    quality: float

    @property
    def total(self) -> float:
        return (
            self.similarity + self.precedence + self.status + self.success_rate
            + self.executions + self.recency + self.quality
        )

    def to_dict(self) -> Dict[str, float]:
        data = {k: round(v, 4) for k, v in asdict(self).items()}
        data["total"] = round(self.total, 4)
        return data


def composite_score(
    similarity: float,
    payload: Dict[str, Any],
    tier: str,
    weights: Optional[RankingWeights] = None,
    quality: Optional[QualityConfig] = None,
    now: Optional[datetime] = None,
) -> ScoreBreakdown:
    """Score one candidate from its similarity and index payload."""
    weights = weights or RankingWeights()
    quality = quality or QualityConfig()
    executions = int(payload.get("execution_count") or 0)
    return ScoreBreakdown(
        similarity=similarity,
        precedence=precedence_bonus(tier, weights),
        status=status_bonus(payload.get("status", ""), weights),
        success_rate=success_rate_of(payload) * weights.success_rate,
        executions=min(math.log1p(executions) * weights.execution_count, weights.execution_cap),
        recency=recency_bonus(payload.get("updated_at"), weights, now),
        quality=quality_bonus(payload.get("quality_score"), weights, quality),
    )


@dataclass
class Candidate:
    """One index hit on its way through ranking, re-ranking and resolution."""
    entry_id: str
    scope: str
    tier: str
    similarity: float
    payload: Dict[str, Any]
    breakdown: ScoreBreakdown
    confidence: Optional[float] = None
    reason: Optional[str] = None
    reranked: bool = False

    @property
    def playbook_id(self) -> str:
        return self.payload.get("playbook_id", "")

    @property
    def version(self) -> str:
        return str(self.payload.get("version", ""))

    @property
    def score(self) -> float:
        return self.breakdown.total
