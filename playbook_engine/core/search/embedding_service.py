# ============================================================================
# playbook_engine/core/search/embedding_service.py
# ============================================================================
"""
Embedding Service - OpenAI API embeddings for playbooks and search intents.

Uses the model configured in ``llm.task_types.embedding`` (or the
``EMBEDDING_MODEL`` environment variable) and the shared OpenAI client owned
by LLMAdapter.

Usage:
    from playbook_engine.core.search.embedding_service import embedding_service

    vector = await embedding_service.get_embedding("Restart an EC2 instance")

Configuration (config.yml):
    llm:
      task_types:
        embedding:
          model: text-embedding-3-small  # 1536 dimensions
"""

import asyncio
import logging
import re
import time
from typing import List, Optional

from playbook_engine.core.errors import LLMUnavailable
from playbook_engine.core.llm.llm_adapter import LLMAdapter, llm_adapter
from playbook_engine.core.models.llm_models import LLMTaskType

logger = logging.getLogger("playbook_engine.embedding_service")

# Rate limit handling constants
MAX_RETRIES = 5
INITIAL_BACKOFF_SECONDS = 0.5
MAX_BACKOFF_SECONDS = 10.0
BACKOFF_MULTIPLIER = 2.0

# ~4 chars per token; playbook texts are short, intents shorter
MAX_CHARS = 8000

# Known embedding dimensions for common models
EMBEDDING_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


def _is_rate_limit_error(error: Exception) -> bool:
    error_str = str(error).lower()
    return (
        "rate limit" in error_str
        or "429" in error_str
        or "ratelimit" in error_str
        or "too many requests" in error_str
    )


def _get_retry_after(error: Exception) -> float:
    """Extract retry-after time from the error message if available."""
    error_str = str(error)
    match = re.search(r"try again in (\d+\.?\d*)s", error_str)
    if match:
        return float(match.group(1))
    match = re.search(r"retry.?after.?(\d+)", error_str, re.IGNORECASE)
    if match:
        return float(match.group(1))
    return INITIAL_BACKOFF_SECONDS


def _clean(text: str) -> str:
    text = text[:MAX_CHARS]
    return text if text.strip() else "empty"


class EmbeddingService:
    """
    OpenAI API-based embedding generation.

    The OpenAI client is synchronous; calls run in the default executor.
    Rate-limit errors are retried with exponential backoff, anything else
    propagates so the caller (sync, search) can record the failure.
    """

    DEFAULT_DIM = 1536

    def __init__(self, adapter: Optional[LLMAdapter] = None):
        self._adapter = adapter or llm_adapter

    @property
    def model_name(self) -> str:
        return self._adapter.get_model(LLMTaskType.EMBEDDING)

    @property
    def embedding_dim(self) -> int:
        configured = self._adapter.get_dimensions(LLMTaskType.EMBEDDING)
        if configured:
            return configured
        return EMBEDDING_DIMENSIONS.get(self.model_name, self.DEFAULT_DIM)

    def _create_with_retry(self, inputs) -> List[List[float]]:
        client = self._adapter.client
        if client is None:
            raise LLMUnavailable("Embedding client not available; configure llm.api_key or OPENAI_API_KEY")

        kwargs = {"model": self.model_name, "input": inputs}
        dimensions = self._adapter.get_dimensions(LLMTaskType.EMBEDDING)
        if dimensions:
            kwargs["dimensions"] = dimensions

        backoff = INITIAL_BACKOFF_SECONDS
        for attempt in range(MAX_RETRIES):
            try:
                response = client.embeddings.create(**kwargs)
                # Response data is in the same order as the input
                return [item.embedding for item in response.data]
            except Exception as e:
                if not _is_rate_limit_error(e) or attempt == MAX_RETRIES - 1:
                    raise
                wait_time = min(max(_get_retry_after(e), backoff), MAX_BACKOFF_SECONDS)
                logger.warning(
                    f"Rate limit hit, waiting {wait_time:.1f}s before retry "
                    f"(attempt {attempt + 1}/{MAX_RETRIES})"
                )
                time.sleep(wait_time)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
        return []

    def _generate_embedding_sync(self, text: str) -> List[float]:
        return self._create_with_retry(_clean(text))[0]

    async def get_embedding(self, text: str) -> List[float]:
        """
        Generate the embedding for a single text.

        Raises:
            LLMUnavailable: no API key configured
            Exception: if the API call fails
        """
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._generate_embedding_sync, text)


embedding_service = EmbeddingService()
