"""
Request and response schemas for API v1.

Request models map onto the service-layer dataclasses (``SearchIntent``,
``SearchFilters``); responses mirror the services' ``to_dict()`` output.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from playbook_engine.core.search.query_builder import SearchFilters, SearchIntent
from playbook_engine.playbooks.models import PlaybookStatus


class SearchFiltersModel(BaseModel):
    include_all_versions: bool = Field(default=False, description="Return every version, not just the best per playbook")
    statuses: Optional[List[str]] = Field(default=None, description="Restrict to these statuses (intersected with the searchable set)")
    author_classes: Optional[List[str]] = Field(default=None, description="Restrict to these author classes")
    min_quality_score: Optional[float] = Field(default=None, ge=0, le=100)


class IntentModel(BaseModel):
    action: str = Field(..., min_length=1, description="What the caller wants to do")
    cloud_provider: Optional[str] = None
    resource_types: List[str] = Field(default_factory=list)
    filters: SearchFiltersModel = Field(default_factory=SearchFiltersModel)
    use_case: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    extracted_parameters: Dict[str, Any] = Field(default_factory=dict)
    user_context: Dict[str, Any] = Field(default_factory=dict)
    estate: Dict[str, Any] = Field(default_factory=dict, description="Estate snapshot used for parameter prefill")

    def to_domain(self) -> SearchIntent:
        return SearchIntent.from_dict(self.model_dump())


class SearchRequest(BaseModel):
    intent: IntentModel
    tenant_id: Optional[str] = Field(default=None, description="Tenant whose library is searched alongside the global one")
    filters: Optional[SearchFiltersModel] = None
    limit: Optional[int] = Field(default=None, ge=1, le=50)

    def domain_filters(self) -> Optional[SearchFilters]:
        return SearchFilters.from_dict(self.filters.model_dump()) if self.filters else None


class RankedPlaybookResponse(BaseModel):
    rank: int
    playbook_id: str
    version: str
    source: str
    confidence: float
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    parameters: List[Dict[str, Any]] = Field(default_factory=list)
    explain_plan: Dict[str, Any] = Field(default_factory=dict)
    steps: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class SearchResponseModel(BaseModel):
    results: List[RankedPlaybookResponse] = Field(default_factory=list)
    degraded: bool = False
    warnings: List[str] = Field(default_factory=list)


class PublishRequest(BaseModel):
    tenant_id: Optional[str] = Field(default=None, description="Empty publishes to the global library")
    playbook_draft: Dict[str, Any]
    referenced_script_uploads: List[Dict[str, Any]] = Field(default_factory=list)
    actor: Optional[str] = None


class PublishResponse(BaseModel):
    status: str = Field(..., description="published | rejected")
    playbook_id: Optional[str] = None
    version: Optional[str] = None
    lifecycle_status: Optional[str] = None
    quality_score: float = 0.0
    feedback: Dict[str, Any] = Field(default_factory=dict)


class StatusUpdateRequest(BaseModel):
    tenant_id: Optional[str] = None
    playbook_id: str
    version: str
    new_status: PlaybookStatus
    reason: Optional[str] = None
    actor: Optional[str] = None


class ExecutionReport(BaseModel):
    tenant_id: Optional[str] = None
    playbook_id: str
    version: str
    success: bool


class VersionInfo(BaseModel):
    playbook_id: str
    version: str
    scope: str
    status: str
    quality_score: Optional[float] = None
    execution_count: int = 0
    success_count: int = 0
    consecutive_failures: int = 0


class OkResponse(BaseModel):
    ok: bool = True
    status: Optional[str] = None


class SyncTriggerRequest(BaseModel):
    full: bool = Field(default=False, description="Ignore the stored marker and rescan the whole scope")
    background: bool = Field(default=False, description="Queue the sync on the Celery worker instead of running inline")
