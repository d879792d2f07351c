# playbook_engine/playbooks/publisher.py
"""
Publication flow.

    draft + script uploads
        -> JSON schema shape check of the draft and script uploads
        -> parse and structural validation (against the published library)
        -> quality scoring and gate
        -> per-version lock, conflict check
        -> Reference Store write (scripts first, then the playbook)
        -> lifecycle registration and initial transitions

The next sync cycle picks the new objects up and indexes them.

Initial status:
    tenant scope, storage_strategy pending_team_review  -> pending_review
    tenant scope, any other strategy                    -> active
    global scope                                        -> pending_review
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from playbook_engine.core.errors import AssetNotFound, VersionConflict
from playbook_engine.core.models.config_models import QualityConfig
from playbook_engine.core.storage.reference_store import GLOBAL_SCOPE, ReferenceStore, content_hash
from playbook_engine.playbooks.catalog import AssetCatalog
from playbook_engine.playbooks.lifecycle import LifecycleManager
from playbook_engine.playbooks.models import Playbook, PlaybookStatus, Script, StorageStrategy
from playbook_engine.playbooks.quality import QualityValidator, ValidationResult
from playbook_engine.playbooks.schemas import SCRIPT_JSON_SCHEMA, schema_issues
from playbook_engine.playbooks.structure import parse_draft

logger = logging.getLogger("playbook_engine.publisher")


@dataclass
class PublishResult:
    status: str  # published | rejected
    playbook_id: Optional[str] = None
    version: Optional[str] = None
    lifecycle_status: Optional[str] = None
    quality_score: float = 0.0
    feedback: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "playbook_id": self.playbook_id,
            "version": self.version,
            "lifecycle_status": self.lifecycle_status,
            "quality_score": self.quality_score,
            "feedback": self.feedback,
        }


class PlaybookPublisher:
    """
    Validates and publishes playbook drafts.

    Args:
        reference_store: Where definitions are written
        lifecycle: Lifecycle State Manager
        lock_service: Provides ``lock(name, timeout)``; guards one version at a time
    """

    def __init__(
        self,
        reference_store: ReferenceStore,
        lifecycle: LifecycleManager,
        lock_service,
        quality_config: Optional[QualityConfig] = None,
    ):
        self.reference_store = reference_store
        self.lifecycle = lifecycle
        self.lock_service = lock_service
        self.quality_config = quality_config or QualityConfig()

    async def validate(
        self,
        scope: str,
        draft: Dict[str, Any],
        script_uploads: Optional[List[Dict[str, Any]]] = None,
    ) -> ValidationResult:
        """Score and validate a draft without publishing it."""
        script_uploads = script_uploads or []
        upload_issues = [
            issue
            for n, raw in enumerate(script_uploads)
            for issue in schema_issues(raw, SCRIPT_JSON_SCHEMA, f"referenced_script_uploads[{n}]")
        ]

        playbook, parse_issues = parse_draft(draft)
        if playbook is None or upload_issues:
            return ValidationResult(
                score=0.0,
                featured=False,
                publishable=False,
                improvements=["Fix the blocking issues and resubmit"],
                blocking_issues=[i.to_dict() for i in parse_issues] + upload_issues,
            )

        catalog = AssetCatalog()
        for raw in script_uploads:
            catalog.add_script(scope, Script.from_dict(raw))
        await self._load_references(catalog, scope, playbook)

        return QualityValidator(catalog, self.quality_config).validate(scope, playbook)

    async def _load_references(self, catalog: AssetCatalog, scope: str, playbook: Playbook) -> None:
        for step in playbook.steps:
            try:
                if step.script_ref is not None:
                    await catalog.load_script(
                        self.reference_store, scope, step.script_ref.script_id, step.script_ref.version
                    )
                if step.playbook_ref is not None:
                    await catalog.prefetch_playbook(
                        self.reference_store,
                        scope,
                        step.playbook_ref.playbook_id,
                        step.playbook_ref.version,
                        max_depth=self.quality_config.max_reference_depth,
                    )
            except AssetNotFound:
                # Reported by structural validation with the step path
                continue

    async def publish(
        self,
        tenant_id: Optional[str],
        draft: Dict[str, Any],
        script_uploads: Optional[List[Dict[str, Any]]] = None,
        actor: Optional[str] = None,
    ) -> PublishResult:
        """
        Publish a draft into the tenant library (or the global library when
        ``tenant_id`` is empty).

        Returns a rejected result with feedback for invalid drafts.

        Raises:
            VersionConflict: the version exists with different content, or
                another publish of the same version is in progress
        """
        scope = tenant_id or GLOBAL_SCOPE
        script_uploads = script_uploads or []
        result = await self.validate(scope, draft, script_uploads)

        if not result.publishable:
            identity = {
                k: v for k, v in (draft if isinstance(draft, dict) else {}).items()
                if k in ("playbook_id", "version") and isinstance(v, str)
            }
            logger.info(
                f"Rejected draft {identity.get('playbook_id')}@{identity.get('version')} "
                f"(score={result.score}, blocking={len(result.blocking_issues)})"
            )
            return PublishResult(
                status="rejected",
                playbook_id=identity.get("playbook_id"),
                version=identity.get("version"),
                quality_score=result.score,
                feedback=result.to_dict(),
            )

        playbook = Playbook.from_dict(draft)
        playbook.quality_score = result.score
        playbook.quality_feedback = {"improvements": list(result.improvements), "warnings": list(result.warnings)}
        playbook.status = PlaybookStatus.DRAFT
        playbook.execution_count = 0
        playbook.success_count = 0
        playbook.updated_at = None
        stored = playbook.to_dict()
        digest = content_hash(stored)

        lock_name = f"publish:{scope}:{playbook.playbook_id}:{playbook.version}"
        async with self.lock_service.lock(lock_name, timeout=60) as acquired:
            if not acquired:
                raise VersionConflict(
                    f"Another publish of {playbook.playbook_id}@{playbook.version} is in progress",
                    details={"playbook_id": playbook.playbook_id, "version": playbook.version},
                )

            existing = await self.lifecycle.get_version(scope, playbook.playbook_id, playbook.version)
            if existing is not None and existing.deleted_at is None and existing.content_hash == digest:
                logger.info(f"{playbook.playbook_id}@{playbook.version} already published with identical content")
                return PublishResult(
                    status="published",
                    playbook_id=playbook.playbook_id,
                    version=playbook.version,
                    lifecycle_status=existing.status,
                    quality_score=result.score,
                    feedback=result.to_dict(),
                )
            if existing is not None and existing.deleted_at is None and existing.status != PlaybookStatus.DRAFT.value:
                raise VersionConflict(
                    f"Playbook '{playbook.playbook_id}' version {playbook.version} is already "
                    f"{existing.status}. Publish a new version instead.",
                    details={
                        "playbook_id": playbook.playbook_id,
                        "version": playbook.version,
                        "status": existing.status,
                    },
                )

            for raw in script_uploads:
                await self.reference_store.put_script(scope, Script.from_dict(raw).to_dict())
            put = await self.reference_store.put_playbook(
                scope, stored, allow_overwrite=existing is not None
            )

            await self.lifecycle.register_version(scope, playbook, put.content_hash, put.key, actor=actor)
            await self.lifecycle.transition(
                scope, playbook.playbook_id, playbook.version, PlaybookStatus.READY,
                reason=f"passed validation (score {result.score})", actor=actor,
            )
            target = self._initial_status(scope, playbook)
            record = await self.lifecycle.transition(
                scope, playbook.playbook_id, playbook.version, target,
                reason="published", actor=actor,
            )

        logger.info(
            f"Published {playbook.playbook_id}@{playbook.version} to {scope} "
            f"as {record.status} (score={result.score})"
        )
        return PublishResult(
            status="published",
            playbook_id=playbook.playbook_id,
            version=playbook.version,
            lifecycle_status=record.status,
            quality_score=result.score,
            feedback=result.to_dict(),
        )

    @staticmethod
    def _initial_status(scope: str, playbook: Playbook) -> PlaybookStatus:
        if scope == GLOBAL_SCOPE:
            return PlaybookStatus.PENDING_REVIEW
        if playbook.storage_strategy == StorageStrategy.PENDING_TEAM_REVIEW:
            return PlaybookStatus.PENDING_REVIEW
        return PlaybookStatus.ACTIVE
