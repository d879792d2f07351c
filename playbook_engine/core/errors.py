# playbook_engine/core/errors.py
"""
Error taxonomy for the Playbook Engine.

Every error carries a stable ``code``, a human-readable ``message`` and a
``details`` dict so that publish-time failures can be surfaced to authors as
structured, actionable feedback rather than bare failure codes.

Usage:
    from playbook_engine.core.errors import VersionConflict

    raise VersionConflict(
        "Version 1.2.0 of 'restart-ec2' already exists with different content",
        details={"playbook_id": "restart-ec2", "version": "1.2.0"},
    )
"""

from typing import Any, Dict, List, Optional


class PlaybookEngineError(Exception):
    """Base class for all engine errors."""

    code = "PLAYBOOK_ENGINE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class AssetNotFound(PlaybookEngineError):
    """A script or playbook (id, version) does not exist in the store."""

    code = "ASSET_NOT_FOUND"


class InvalidMappingExpression(PlaybookEngineError):
    """A parameter-mapping value uses an unknown ``${...}`` form."""

    code = "INVALID_MAPPING_EXPRESSION"


class ValidationFailed(PlaybookEngineError):
    """Publish-time structural validation failed. Caller fixes and resubmits."""

    code = "VALIDATION_FAILED"

    def __init__(
        self,
        message: str,
        issues: Optional[List[Dict[str, Any]]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        details.setdefault("issues", issues or [])
        super().__init__(message, details)
        self.issues = details["issues"]


class ReferenceDepthExceeded(PlaybookEngineError):
    """Nested ``playbook_ref`` expansion went deeper than the allowed budget."""

    code = "REFERENCE_DEPTH_EXCEEDED"


class CyclicReferenceDetected(PlaybookEngineError):
    """A ``playbook_ref`` chain loops back onto itself."""

    code = "CYCLIC_REFERENCE_DETECTED"


class QualityThresholdNotMet(PlaybookEngineError):
    """Quality score below the publication minimum."""

    code = "QUALITY_THRESHOLD_NOT_MET"


class RerankingDegraded(PlaybookEngineError):
    """The LLM re-rank stage failed; results fall back to composite order."""

    code = "RERANKING_DEGRADED"


class SyncPartialFailure(PlaybookEngineError):
    """One object in a sync batch failed; retried on the next cycle."""

    code = "SYNC_PARTIAL_FAILURE"


class ConcurrentSyncRejected(PlaybookEngineError):
    """A sync for the same collection is already in flight."""

    code = "CONCURRENT_SYNC_REJECTED"


class VersionConflict(PlaybookEngineError):
    """Conflicting write to an existing (id, version)."""

    code = "VERSION_CONFLICT"


class InvalidStatusTransition(PlaybookEngineError):
    """Requested lifecycle transition is not in the transition table."""

    code = "INVALID_STATUS_TRANSITION"


class AssetInUse(PlaybookEngineError):
    """Deletion refused because another playbook references this version."""

    code = "ASSET_IN_USE"


class LLMUnavailable(PlaybookEngineError):
    """The LLM endpoint is not configured or did not return a usable answer."""

    code = "LLM_UNAVAILABLE"
