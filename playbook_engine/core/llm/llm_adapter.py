"""
LLM Adapter - OpenAI-compatible client initialization and model routing.

Configuration Priority:
    1. config.yml llm section
    2. Environment variables (OPENAI_API_KEY, etc.)

Usage:
    from playbook_engine.core.llm.llm_adapter import llm_adapter

    if llm_adapter.is_available:
        client = llm_adapter.client
        model = llm_adapter.get_model(LLMTaskType.RERANK)
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx
from openai import OpenAI

from playbook_engine.config import settings
from playbook_engine.core.models.llm_models import DEFAULT_TEMPERATURES, LLMTaskType
from playbook_engine.core.shared.config_loader import config_loader

logger = logging.getLogger("playbook_engine.llm")


class LLMAdapter:
    """Owns the OpenAI client and resolves per-task model settings."""

    def __init__(self):
        self._client: Optional[OpenAI] = None
        self._initialize_client()

    @property
    def client(self) -> Optional[OpenAI]:
        return self._client

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def _initialize_client(self) -> None:
        llm_config = config_loader.get_llm_config()

        if llm_config:
            logger.info("Loading LLM configuration from config.yml")
            api_key = llm_config.api_key
            base_url = llm_config.base_url
            timeout = llm_config.timeout
            max_retries = llm_config.max_retries
            verify_ssl = llm_config.verify_ssl
        else:
            logger.info("Loading LLM configuration from environment variables")
            api_key = settings.openai_api_key
            base_url = settings.openai_base_url
            timeout = settings.openai_timeout
            max_retries = settings.openai_max_retries
            verify_ssl = settings.openai_verify_ssl

        if not api_key:
            logger.warning("No LLM API key configured (checked config.yml and environment)")
            self._client = None
            return

        try:
            http_client = httpx.Client(verify=verify_ssl, timeout=timeout)
            self._client = OpenAI(
                api_key=api_key,
                base_url=base_url,
                http_client=http_client,
                max_retries=max_retries,
            )
        except Exception as e:
            logger.warning(f"Failed to initialize OpenAI client: {e}")
            self._client = None

    def get_model(self, task_type: LLMTaskType) -> str:
        """Model for a task type, falling back to the env-configured defaults."""
        if task_type == LLMTaskType.EMBEDDING:
            # default_model is a chat model; embeddings need an explicit task type entry
            llm_config = config_loader.get_llm_config()
            if llm_config and llm_config.task_types and "embedding" in llm_config.task_types:
                return llm_config.task_types["embedding"].model
            return settings.embedding_model
        task_config = config_loader.get_task_type_config(task_type)
        if task_config is not None:
            return task_config.model
        return settings.openai_model

    def get_temperature(self, task_type: LLMTaskType) -> float:
        task_config = config_loader.get_task_type_config(task_type)
        if task_config is not None and task_config.temperature is not None:
            return task_config.temperature
        return DEFAULT_TEMPERATURES.get(task_type, 0.5)

    def get_dimensions(self, task_type: LLMTaskType = LLMTaskType.EMBEDDING) -> Optional[int]:
        task_config = config_loader.get_task_type_config(task_type)
        return task_config.dimensions if task_config is not None else None

    async def test_connection(self) -> Dict[str, Any]:
        """Send a tiny completion and report whether the endpoint answered."""
        model = self.get_model(LLMTaskType.STANDARD)
        if not self._client:
            return {
                "connected": False,
                "model": model,
                "error": "No API key provided or client initialization failed",
            }

        def _sync_test():
            return self._client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": "Hello, respond with just 'OK'"}],
                max_tokens=10,
                temperature=0,
            )

        try:
            resp = await asyncio.to_thread(_sync_test)
            return {
                "connected": True,
                "model": model,
                "response": (resp.choices[0].message.content or "").strip(),
            }
        except Exception as e:
            return {"connected": False, "model": model, "error": str(e)}


llm_adapter = LLMAdapter()
