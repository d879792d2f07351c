# playbook_engine/core/models/llm_models.py
"""
LLM Task Type Models - Configuration for model routing.

Task types allow different models to be used for different purposes:
- embedding: Vector representations of playbooks and search intents
- rerank: Fast, low-variance judgement over a short candidate list
- standard: Balanced quality/cost fallback
"""

from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class LLMTaskType(str, Enum):
    """LLM task type categories for model routing."""
    EMBEDDING = "embedding"   # Vector embeddings (specialized model)
    RERANK = "rerank"         # Candidate re-ranking
    STANDARD = "standard"     # Anything else


class LLMTaskConfig(BaseModel):
    """
    Configuration for a specific LLM task type.

    Attributes:
        model: Model identifier (e.g., "gpt-4o-mini")
        temperature: Sampling temperature (0.0-2.0, lower = more deterministic)
        max_tokens: Maximum tokens in response
        timeout: Request timeout in seconds
        dimensions: Embedding dimensions (embedding task type only)
    """
    model_config = ConfigDict(extra="allow")

    model: str = Field(..., description="Model identifier")
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0, description="Sampling temperature")
    max_tokens: Optional[int] = Field(None, gt=0, description="Maximum response tokens")
    timeout: Optional[int] = Field(None, gt=0, description="Request timeout in seconds")
    dimensions: Optional[int] = Field(None, gt=0, description="Embedding dimensions")


# Recommended temperature settings per task type
DEFAULT_TEMPERATURES: Dict[LLMTaskType, float] = {
    LLMTaskType.EMBEDDING: 0.0,      # N/A for embeddings
    LLMTaskType.RERANK: 0.1,         # Very deterministic
    LLMTaskType.STANDARD: 0.5,       # Balanced
}
