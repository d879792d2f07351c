"""
Configuration loader service for YAML-based configuration.

This service loads and caches configuration from config.yml, providing type-safe
access to service configurations with environment variable resolution and validation.

Usage:
    from playbook_engine.core.shared.config_loader import config_loader

    # Get search configuration
    search_config = config_loader.get_search_config()

    # Check thresholds at startup
    for error in config_loader.validate():
        logger.error(error)
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

from playbook_engine.core.models.config_models import (
    AppConfig,
    LifecycleConfig,
    LLMConfig,
    MinIOConfig,
    QualityConfig,
    SearchConfig,
    SyncConfig,
)
from playbook_engine.core.models.llm_models import DEFAULT_TEMPERATURES, LLMTaskConfig, LLMTaskType

logger = logging.getLogger("playbook_engine.config")


class ConfigLoader:
    """
    Configuration loader and cache manager.

    Loads config.yml, validates against Pydantic models, resolves environment
    variables, and provides typed access methods. Sections with defaults
    (search, sync, lifecycle, quality) are always available, even when no
    file is present.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration loader.

        Args:
            config_path: Path to config.yml (defaults to PLAYBOOK_ENGINE_CONFIG,
                then the project root)
        """
        if config_path is None:
            config_path = os.getenv("PLAYBOOK_ENGINE_CONFIG")
        if config_path is None:
            project_dir = Path(__file__).resolve().parent.parent.parent.parent
            candidate_paths = [
                project_dir / "config.yml",
                Path("/app/config.yml"),
                Path.cwd() / "config.yml",
            ]
            config_path = str(candidate_paths[0])
            for candidate in candidate_paths:
                if candidate.exists():
                    config_path = str(candidate)
                    break

        self.config_path = config_path
        self._config: Optional[AppConfig] = None
        self._loaded = False

    def load(self) -> AppConfig:
        """
        Load and parse configuration file.

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        logger.info(f"Loading configuration from: {self.config_path}")

        try:
            self._config = AppConfig.from_yaml(self.config_path)
            self._loaded = True
            logger.info("Configuration loaded successfully")
            return self._config
        except FileNotFoundError:
            logger.warning(f"Configuration file not found: {self.config_path}")
            logger.warning("Falling back to environment variables and defaults")
            self._loaded = False
            raise
        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            self._loaded = False
            raise ValueError(f"Configuration error: {e}") from e

    def is_loaded(self) -> bool:
        return self._loaded and self._config is not None

    def get_config(self) -> Optional[AppConfig]:
        """
        Get the full configuration object.

        Returns:
            AppConfig instance or None if the file is missing or invalid
        """
        if not self.is_loaded():
            try:
                return self.load()
            except (FileNotFoundError, ValueError):
                return None
        return self._config

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors (empty if valid)."""
        errors = []
        config = self.get_config() or AppConfig()

        if config.llm is None:
            logger.warning("LLM configuration not found (falling back to environment)")
        if config.minio is None:
            logger.warning("MinIO configuration not found (falling back to environment)")
        if config.quality.warning_below < config.quality.minimum_score:
            errors.append("quality.warning_below must be >= quality.minimum_score")
        if config.quality.featured_score < config.quality.warning_below:
            errors.append("quality.featured_score must be >= quality.warning_below")
        if config.search.rerank_top_n > config.search.candidate_top_k * 2:
            errors.append("search.rerank_top_n exceeds the merged candidate pool")
        return errors

    # -------------------------------------------------------------------------
    # Typed configuration getters
    # -------------------------------------------------------------------------

    def get_llm_config(self) -> Optional[LLMConfig]:
        config = self.get_config()
        if config is None:
            return None
        return config.llm

    def get_minio_config(self) -> Optional[MinIOConfig]:
        config = self.get_config()
        if config is None:
            return None
        return config.minio

    def get_search_config(self) -> SearchConfig:
        config = self.get_config()
        return config.search if config else SearchConfig()

    def get_sync_config(self) -> SyncConfig:
        config = self.get_config()
        return config.sync if config else SyncConfig()

    def get_lifecycle_config(self) -> LifecycleConfig:
        config = self.get_config()
        return config.lifecycle if config else LifecycleConfig()

    def get_quality_config(self) -> QualityConfig:
        config = self.get_config()
        return config.quality if config else QualityConfig()

    # -------------------------------------------------------------------------
    # Task Type Model Routing
    # -------------------------------------------------------------------------

    def get_task_type_config(self, task_type: LLMTaskType) -> Optional[LLMTaskConfig]:
        """
        Get the LLM configuration for a specific task type.

        Resolution order:
        1. config.yml llm.task_types.{task_type}
        2. llm.default_model with recommended temperature

        Returns None when no llm section is configured; callers then fall
        back to environment settings.
        """
        llm_config = self.get_llm_config()
        if not llm_config:
            return None

        if llm_config.task_types and task_type.value in llm_config.task_types:
            config = llm_config.task_types[task_type.value]
            return LLMTaskConfig(
                model=config.model,
                temperature=(
                    config.temperature if config.temperature is not None
                    else DEFAULT_TEMPERATURES.get(task_type, 0.5)
                ),
                max_tokens=config.max_tokens,
                timeout=config.timeout,
                dimensions=config.dimensions,
            )

        return LLMTaskConfig(
            model=llm_config.default_model,
            temperature=DEFAULT_TEMPERATURES.get(task_type, 0.5),
        )


# Global configuration loader instance
config_loader = ConfigLoader()
