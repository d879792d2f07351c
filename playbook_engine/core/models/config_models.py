"""
Pydantic models for YAML configuration validation.

This module defines the schema for config.yml, providing type-safe configuration
with validation and sensible defaults.

Usage:
    from playbook_engine.core.models.config_models import AppConfig
    config = AppConfig.from_yaml("config.yml")
"""

import os
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class LLMTaskTypeConfig(BaseModel):
    """
    Configuration for a specific LLM task type.

    Uses the parent LLM connection settings (api_key, base_url, provider).
    """
    model_config = ConfigDict(extra='forbid')

    model: str = Field(
        description="Model identifier (e.g., gpt-4o-mini, text-embedding-3-small)"
    )
    temperature: Optional[float] = Field(
        default=None,
        ge=0.0,
        le=2.0,
        description="Generation temperature (inherits from parent if not set)"
    )
    max_tokens: Optional[int] = Field(
        default=None,
        ge=1,
        le=128000,
        description="Maximum tokens to generate"
    )
    timeout: Optional[int] = Field(
        default=None,
        ge=1,
        le=600,
        description="Request timeout in seconds (overrides parent)"
    )
    dimensions: Optional[int] = Field(
        default=None,
        ge=1,
        le=4096,
        description="Embedding output dimensions (only applies to embedding task type)"
    )


class LLMConfig(BaseModel):
    """
    LLM service configuration with task-type-based model routing.

    Supports OpenAI, Ollama, OpenWebUI, LM Studio, and compatible endpoints.
    The ``embedding`` task type selects the embedding model; ``rerank``
    selects the model used for candidate re-ranking.
    """
    model_config = ConfigDict(extra='forbid')

    provider: Literal["openai", "ollama", "openwebui", "lmstudio"] = Field(
        description="LLM provider name"
    )
    api_key: Optional[str] = Field(
        default=None,
        description="API key or authentication token"
    )
    base_url: str = Field(
        description="API endpoint URL"
    )
    default_model: str = Field(
        description="Default model identifier used when task type not configured"
    )
    timeout: int = Field(
        default=60,
        ge=1,
        le=600,
        description="Request timeout in seconds"
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Maximum retry attempts"
    )
    verify_ssl: bool = Field(
        default=True,
        description="Verify SSL certificates"
    )
    task_types: Optional[Dict[str, LLMTaskTypeConfig]] = Field(
        default=None,
        description="Task-type-specific model configuration (embedding, rerank)"
    )


class MinIOConfig(BaseModel):
    """
    MinIO/S3 object storage configuration for the Reference Store.

    Global library objects live under ``global/`` and tenant objects under
    ``tenants/{tenant_id}/`` in the same bucket.
    """
    model_config = ConfigDict(extra='forbid')

    enabled: bool = Field(
        default=True,
        description="Enable object storage (MinIO/S3)"
    )
    endpoint: str = Field(
        default="minio:9000",
        description="MinIO/S3 server endpoint (host:port)"
    )
    access_key: str = Field(
        description="MinIO access key / AWS Access Key ID"
    )
    secret_key: str = Field(
        description="MinIO secret key / AWS Secret Access Key"
    )
    secure: bool = Field(
        default=False,
        description="Use HTTPS for MinIO/S3 connections"
    )
    bucket_playbooks: str = Field(
        default="playbook-library",
        description="Bucket holding playbook and script objects"
    )


class RankingWeights(BaseModel):
    """Composite ranking policy. Every term is added to raw vector similarity."""
    model_config = ConfigDict(extra='forbid')

    precedence_tenant_trusted: float = Field(default=0.30, ge=0.0, le=1.0)
    precedence_curated: float = Field(default=0.15, ge=0.0, le=1.0)
    precedence_experimental: float = Field(default=0.0, ge=0.0, le=1.0)
    status_full: float = Field(
        default=0.10, ge=0.0, le=1.0,
        description="Bonus for active/approved"
    )
    status_partial: float = Field(
        default=0.04, ge=0.0, le=1.0,
        description="Bonus for deprecated/needs_update"
    )
    status_minimal: float = Field(
        default=0.01, ge=0.0, le=1.0,
        description="Bonus for pending_review"
    )
    success_rate: float = Field(
        default=0.10, ge=0.0, le=1.0,
        description="k1: multiplier on success rate"
    )
    execution_count: float = Field(
        default=0.01, ge=0.0, le=1.0,
        description="k2: multiplier on log1p(execution_count)"
    )
    execution_cap: float = Field(
        default=0.05, ge=0.0, le=1.0,
        description="Upper bound for the execution-count term"
    )
    recency: float = Field(
        default=0.05, ge=0.0, le=1.0,
        description="Maximum recency bonus for a version updated just now"
    )
    recency_half_life_days: float = Field(default=90.0, gt=0.0)
    quality_featured: float = Field(default=0.05, ge=0.0, le=1.0)
    quality_normal: float = Field(default=0.02, ge=0.0, le=1.0)


class SearchConfig(BaseModel):
    """
    Search configuration for pgvector similarity search and LLM re-ranking.

    Note: The embedding model is configured in llm.task_types.embedding, not here.
    """
    model_config = ConfigDict(extra='forbid')

    candidate_top_k: int = Field(
        default=10,
        ge=1,
        le=200,
        description="Candidates fetched from each collection"
    )
    rerank_enabled: bool = Field(
        default=True,
        description="Run the LLM re-rank pass over the top candidates"
    )
    rerank_top_n: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Candidates passed to the LLM re-rank pass"
    )
    rerank_timeout: float = Field(
        default=15.0,
        gt=0.0,
        le=300.0,
        description="Timeout in seconds for one re-rank attempt"
    )
    rerank_max_retries: int = Field(
        default=1,
        ge=0,
        le=5,
        description="Retries after the first failed re-rank attempt"
    )
    rerank_deadline: Optional[float] = Field(
        default=None,
        gt=0.0,
        le=900.0,
        description="Overall time budget in seconds for the re-rank stage, retries included; "
                    "defaults to rerank_timeout * (1 + rerank_max_retries)"
    )
    default_limit: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Results returned when the caller gives no limit"
    )
    embedding_dimensions: int = Field(
        default=1536,
        ge=1,
        le=4096,
        description="Vector size used when creating collections"
    )
    weights: RankingWeights = Field(
        default_factory=RankingWeights,
        description="Composite ranking weights"
    )

    def rerank_budget(self) -> float:
        if self.rerank_deadline is not None:
            return self.rerank_deadline
        return self.rerank_timeout * (1 + self.rerank_max_retries)


class SyncConfig(BaseModel):
    """Sync Engine configuration (Reference Store -> vector index)."""
    model_config = ConfigDict(extra='forbid')

    enabled: bool = Field(
        default=True,
        description="Enable periodic sync via Celery beat"
    )
    interval_seconds: int = Field(
        default=300,
        ge=10,
        le=86400,
        description="Periodic sync interval"
    )
    batch_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Maximum changed objects processed per sync"
    )
    upsert_concurrency: int = Field(
        default=8,
        ge=1,
        le=64,
        description="Concurrent index upserts within one batch"
    )
    max_object_attempts: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Failures before an object is quarantined"
    )
    lock_timeout: int = Field(
        default=600,
        ge=10,
        le=7200,
        description="Seconds before a sync lock expires"
    )
    global_collection: str = Field(
        default="playbooks_global",
        description="Collection name for the curated global library"
    )
    tenant_collection_prefix: str = Field(
        default="playbooks_tenant_",
        description="Prefix for per-tenant collection names"
    )


class LifecycleConfig(BaseModel):
    """Lifecycle State Manager configuration."""
    model_config = ConfigDict(extra='forbid')

    broken_failure_threshold: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Consecutive failures that move an active version to broken"
    )
    auto_deprecate_on_activate: bool = Field(
        default=True,
        description="Deprecate the previous active version when a newer one activates"
    )
    retention_tag: str = Field(
        default="retention",
        description="Object tag key set on deleted versions for lifecycle cleanup"
    )


class QualityConfig(BaseModel):
    """Quality gate thresholds (scores are 0-100)."""
    model_config = ConfigDict(extra='forbid')

    minimum_score: float = Field(default=50.0, ge=0.0, le=100.0)
    warning_below: float = Field(default=70.0, ge=0.0, le=100.0)
    featured_score: float = Field(default=90.0, ge=0.0, le=100.0)
    max_reference_depth: int = Field(default=3, ge=1, le=10)


class AppConfig(BaseModel):
    """
    Root application configuration.

    This is the top-level configuration object that contains all service configs.
    """
    model_config = ConfigDict(extra='forbid')

    version: str = Field(
        default="1.0",
        description="Configuration file version"
    )
    llm: Optional[LLMConfig] = Field(
        default=None,
        description="LLM service configuration"
    )
    minio: Optional[MinIOConfig] = Field(
        default=None,
        description="MinIO/S3 object storage configuration"
    )
    search: SearchConfig = Field(
        default_factory=SearchConfig,
        description="Vector search and ranking configuration"
    )
    sync: SyncConfig = Field(
        default_factory=SyncConfig,
        description="Sync Engine configuration"
    )
    lifecycle: LifecycleConfig = Field(
        default_factory=LifecycleConfig,
        description="Lifecycle State Manager configuration"
    )
    quality: QualityConfig = Field(
        default_factory=QualityConfig,
        description="Quality gate configuration"
    )

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "AppConfig":
        """
        Load and parse configuration from YAML file.

        Args:
            yaml_path: Path to config.yml file

        Returns:
            Validated AppConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml

        if not os.path.exists(yaml_path):
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        resolved_config = cls._resolve_env_vars(raw_config)
        return cls(**resolved_config)

    @classmethod
    def _resolve_env_vars(cls, obj: Any) -> Any:
        """
        Recursively resolve ${VAR} and ${VAR:-default} references.

        Unset variables without a default resolve to None so partial configs
        still load.
        """
        if isinstance(obj, dict):
            return {k: cls._resolve_env_vars(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [cls._resolve_env_vars(item) for item in obj]
        elif isinstance(obj, str):
            if obj.startswith("${") and obj.endswith("}"):
                inner = obj[2:-1]
                if ":-" in inner:
                    var_name, default_value = inner.split(":-", 1)
                    return os.getenv(var_name, default_value)
                return os.getenv(inner)
            return obj
        else:
            return obj
