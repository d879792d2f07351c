"""
LLM re-rank of the top composite candidates.

Best-effort stage: the model sees the intent and a short description of
each candidate and returns, per candidate, a rank, a confidence in [0, 1]
and a one-line reason. Any failure (no client, timeout after the retry
budget, unusable answer) raises RerankingDegraded and the caller keeps the
composite order.
"""

import logging
from typing import Any, Dict, List, Optional

from jinja2 import Template

from playbook_engine.core.errors import LLMUnavailable, RerankingDegraded
from playbook_engine.core.llm.llm_service import LLMService
from playbook_engine.core.models.config_models import SearchConfig
from playbook_engine.core.models.llm_models import LLMTaskType
from playbook_engine.core.search.query_builder import SearchIntent
from playbook_engine.core.search.ranking import Candidate, success_rate_of

logger = logging.getLogger("playbook_engine.search.reranker")

# Feedback lines per candidate kept in the prompt
_MAX_FEEDBACK = 3

SYSTEM_PROMPT = (
    "You rank cloud operations playbooks for an automation assistant. "
    "Prefer the playbook that most directly performs the requested action on the "
    "requested resource type, is proven in use, and carries the fewest warnings. "
    "Respond only with JSON."
)

RERANK_TEMPLATE = Template("""\
Requested operation:
  action: {{ intent.action }}
{%- if intent.cloud_provider %}
  cloud provider: {{ intent.cloud_provider }}
{%- endif %}
{%- if intent.resource_types %}
  resource types: {{ intent.resource_types | join(", ") }}
{%- endif %}
{%- if intent.use_case %}
  use case: {{ intent.use_case }}
{%- endif %}
{%- if intent.keywords %}
  keywords: {{ intent.keywords | join(", ") }}
{%- endif %}
{%- if intent.extracted_parameters %}
  known parameters: {{ intent.extracted_parameters | join(", ") }}
{%- endif %}

Candidates:
{% for c in candidates %}
[{{ loop.index }}] {{ c.playbook_id }} v{{ c.version }} ({{ c.source }}, {{ c.tier }})
  name: {{ c.name }}
  description: {{ c.description }}
  status: {{ c.status }}
  success rate: {{ "%.0f" | format(c.success_rate * 100) }}% over {{ c.execution_count }} runs
{%- if c.prerequisites %}
  prerequisites: {{ c.prerequisites | join("; ") }}
{%- endif %}
{%- if c.quality_score is not none %}
  quality score: {{ c.quality_score }}
{%- endif %}
{%- if c.quality_warnings %}
  quality warnings: {{ c.quality_warnings | join("; ") }}
{%- endif %}
{%- if c.quality_improvements %}
  open improvements: {{ c.quality_improvements | join("; ") }}
{%- endif %}
  composite score: {{ "%.3f" | format(c.score) }}
{% endfor %}
Return JSON of the form:
{"rankings": [{"candidate": <number in brackets>, "rank": <1 = best>, "confidence": <0.0-1.0>, "reason": "<one sentence>"}]}
Rank every candidate exactly once.
""")


def _candidate_context(candidate: Candidate) -> Dict[str, Any]:
    payload = candidate.payload
    feedback = payload.get("quality_feedback") or {}
    return {
        "playbook_id": candidate.playbook_id,
        "version": candidate.version,
        "source": "tenant" if candidate.scope != "global" else "global",
        "tier": candidate.tier,
        "name": payload.get("name", ""),
        "description": (payload.get("description") or "")[:500],
        "status": payload.get("status", ""),
        "success_rate": success_rate_of(payload),
        "execution_count": int(payload.get("execution_count") or 0),
        "prerequisites": list(payload.get("prerequisites") or []),
        "quality_score": payload.get("quality_score"),
        "quality_warnings": list(feedback.get("warnings") or [])[:_MAX_FEEDBACK],
        "quality_improvements": list(feedback.get("improvements") or [])[:_MAX_FEEDBACK],
        "score": candidate.score,
    }


def render_prompt(intent: SearchIntent, candidates: List[Candidate]) -> str:
    return RERANK_TEMPLATE.render(
        intent=intent,
        candidates=[_candidate_context(c) for c in candidates],
    )


def _clamp(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, min(1.0, number))


class LLMReranker:
    """
    Usage:
        reranker = LLMReranker(llm_service, config_loader.get_search_config())
        ordered = await reranker.rerank(intent, candidates[:5])
    """

    def __init__(self, llm_service: LLMService, config: Optional[SearchConfig] = None):
        self.llm_service = llm_service
        self.config = config or SearchConfig()

    async def rerank(self, intent: SearchIntent, candidates: List[Candidate]) -> List[Candidate]:
        """
        Reorder ``candidates`` by the model's ranking.

        Candidates the model omits keep their relative composite order after
        the ranked ones.

        Raises:
            RerankingDegraded: the model could not be used
        """
        if len(candidates) == 0:
            return []

        prompt = render_prompt(intent, candidates)
        try:
            data = await self.llm_service.complete_json(
                prompt,
                system_prompt=SYSTEM_PROMPT,
                timeout=self.config.rerank_timeout,
                max_retries=self.config.rerank_max_retries,
                task_type=LLMTaskType.RERANK,
            )
        except LLMUnavailable as e:
            raise RerankingDegraded(f"Re-rank unavailable: {e.message}", details=e.details)

        rankings = data.get("rankings")
        if not isinstance(rankings, list):
            raise RerankingDegraded("Re-rank response has no 'rankings' list", details={"response": data})

        ranked: Dict[int, Dict[str, Any]] = {}
        for item in rankings:
            if not isinstance(item, dict):
                continue
            try:
                index = int(item.get("candidate")) - 1
                rank = int(item.get("rank"))
            except (TypeError, ValueError):
                continue
            if 0 <= index < len(candidates) and index not in ranked:
                ranked[index] = {
                    "rank": rank,
                    "confidence": _clamp(item.get("confidence")),
                    "reason": str(item.get("reason") or "").strip() or None,
                }

        if not ranked:
            raise RerankingDegraded("Re-rank response did not rank any candidate", details={"response": data})

        for index, info in ranked.items():
            candidate = candidates[index]
            candidate.reranked = True
            if info["confidence"] is not None:
                candidate.confidence = info["confidence"]
            if info["reason"]:
                candidate.reason = info["reason"]

        ordered = sorted(ranked, key=lambda i: (ranked[i]["rank"], i))
        rest = [i for i in range(len(candidates)) if i not in ranked]
        logger.debug(f"Re-ranked {len(ranked)}/{len(candidates)} candidates")
        return [candidates[i] for i in ordered + rest]
