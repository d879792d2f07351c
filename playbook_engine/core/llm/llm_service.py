# ============================================================================
# playbook_engine/core/llm/llm_service.py
# ============================================================================
#
# Chat-completion calls that must come back as JSON.
#
# Connection management is delegated to LLMAdapter; this service owns the
# timeout/retry budget and the parsing of model output. Every attempt runs
# the synchronous OpenAI client in a worker thread under asyncio.wait_for,
# and the same timeout is passed to the request so the thread does not
# outlive the attempt.
#
# ============================================================================

import asyncio
import json
import logging
import re
from typing import Any, Dict, Optional

from playbook_engine.core.errors import LLMUnavailable
from playbook_engine.core.llm.llm_adapter import LLMAdapter, llm_adapter
from playbook_engine.core.models.llm_models import LLMTaskType

logger = logging.getLogger("playbook_engine.llm")

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def parse_json_response(text: str) -> Optional[Dict[str, Any]]:
    """
    Parse a JSON object out of model output.

    Tolerates markdown fences and prose around the object. Returns None when
    no object can be recovered.
    """
    if not text:
        return None
    cleaned = _FENCE.sub("", text.strip()).strip()
    try:
        data = json.loads(cleaned)
        return data if isinstance(data, dict) else None
    except json.JSONDecodeError:
        pass

    json_match = re.search(r"\{[\s\S]*\}", cleaned)
    if json_match:
        try:
            data = json.loads(json_match.group(0))
            return data if isinstance(data, dict) else None
        except json.JSONDecodeError:
            return None
    return None


class LLMService:
    """
    JSON-returning LLM calls with a bounded time and retry budget.

    Usage:
        data = await llm_service.complete_json(prompt, timeout=15, max_retries=1)
    """

    def __init__(self, adapter: Optional[LLMAdapter] = None):
        self._adapter = adapter or llm_adapter

    @property
    def is_available(self) -> bool:
        return self._adapter.is_available

    async def complete_json(
        self,
        prompt: str,
        system_prompt: str = "You are a precise assistant. Respond only with JSON.",
        timeout: float = 30.0,
        max_retries: int = 1,
        task_type: LLMTaskType = LLMTaskType.RERANK,
        max_tokens: int = 2000,
    ) -> Dict[str, Any]:
        """
        Send one prompt and return the parsed JSON object.

        Makes at most ``1 + max_retries`` attempts, each bounded by ``timeout``
        seconds. Timeouts, API errors and unparseable output all count as a
        failed attempt.

        Raises:
            LLMUnavailable: no client is configured or every attempt failed
        """
        client = self._adapter.client
        if client is None:
            raise LLMUnavailable("LLM client not available")

        model = self._adapter.get_model(task_type)
        temperature = self._adapter.get_temperature(task_type)

        def _call() -> str:
            resp = client.chat.completions.create(
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=timeout,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )
            return resp.choices[0].message.content or ""

        attempts = 1 + max(0, max_retries)
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                text = await asyncio.wait_for(asyncio.to_thread(_call), timeout=timeout)
            except asyncio.TimeoutError:
                last_error = f"timed out after {timeout}s"
                logger.warning(f"LLM call attempt {attempt}/{attempts} {last_error}")
                continue
            except Exception as e:
                last_error = str(e)
                logger.warning(f"LLM call attempt {attempt}/{attempts} failed: {e}")
                continue

            data = parse_json_response(text)
            if data is not None:
                return data
            last_error = "response was not a JSON object"
            logger.warning(f"LLM call attempt {attempt}/{attempts}: {last_error}")

        raise LLMUnavailable(
            f"LLM call failed after {attempts} attempt(s): {last_error}",
            details={"model": model, "attempts": attempts},
        )


llm_service = LLMService()
