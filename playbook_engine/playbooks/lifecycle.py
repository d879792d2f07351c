# playbook_engine/playbooks/lifecycle.py
"""
Lifecycle State Manager.

Owns the status of every playbook version and the policy that status
implies for search. Both the allowed transitions and the per-status search
policy are data tables, so changing the state machine never touches the
code that walks it.

Automatic transitions:
- activating a version deprecates every other active version of the same
  playbook id in the same scope, so at most one version is active
- ``lifecycle.broken_failure_threshold`` consecutive failed executions move
  an active version to ``broken``

Every transition is written to the audit table and pushed into the vector
index payload so that the status filter in search stays current.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy import and_, select

from playbook_engine.core.database.models import (
    PlaybookReference,
    PlaybookVersionRecord,
    StatusTransitionLog,
)
from playbook_engine.core.errors import (
    AssetInUse,
    AssetNotFound,
    InvalidStatusTransition,
    VersionConflict,
)
from playbook_engine.core.models.config_models import LifecycleConfig, SyncConfig
from playbook_engine.core.search.collection_stores.base import (
    CollectionStoreAdapter,
    collection_name_for_scope,
)
from playbook_engine.core.storage.reference_store import GLOBAL_SCOPE, ReferenceStore
from playbook_engine.playbooks.models import Playbook, PlaybookStatus as S
from playbook_engine.playbooks.versioning import entry_id, version_key

logger = logging.getLogger("playbook_engine.lifecycle")


TRANSITIONS: Dict[S, FrozenSet[S]] = {
    S.DRAFT: frozenset({S.READY, S.ARCHIVED}),
    S.READY: frozenset({S.PENDING_REVIEW, S.ACTIVE, S.DRAFT, S.ARCHIVED}),
    S.PENDING_REVIEW: frozenset({S.APPROVED, S.REJECTED}),
    S.APPROVED: frozenset({S.ACTIVE, S.DEPRECATED, S.ARCHIVED}),
    S.REJECTED: frozenset({S.DRAFT, S.ARCHIVED}),
    S.ACTIVE: frozenset({S.DEPRECATED, S.BROKEN, S.NEEDS_UPDATE, S.ARCHIVED}),
    S.DEPRECATED: frozenset({S.ACTIVE, S.ARCHIVED}),
    S.NEEDS_UPDATE: frozenset({S.ACTIVE, S.DEPRECATED, S.BROKEN, S.ARCHIVED}),
    S.BROKEN: frozenset({S.ACTIVE, S.NEEDS_UPDATE, S.ARCHIVED}),
    S.ARCHIVED: frozenset(),
}


@dataclass(frozen=True)
class StatusPolicy:
    searchable: bool
    bonus_tier: Optional[str] = None   # full | partial | minimal
    warning: Optional[str] = None      # None | warning | strong_warning


STATUS_POLICIES: Dict[S, StatusPolicy] = {
    S.ACTIVE: StatusPolicy(True, "full"),
    S.APPROVED: StatusPolicy(True, "full"),
    S.DEPRECATED: StatusPolicy(True, "partial", "warning"),
    S.NEEDS_UPDATE: StatusPolicy(True, "partial", "warning"),
    S.PENDING_REVIEW: StatusPolicy(True, "minimal", "strong_warning"),
    S.DRAFT: StatusPolicy(False),
    S.READY: StatusPolicy(False),
    S.REJECTED: StatusPolicy(False),
    S.BROKEN: StatusPolicy(False),
    S.ARCHIVED: StatusPolicy(False),
}

SEARCHABLE_STATUSES: FrozenSet[str] = frozenset(
    status.value for status, policy in STATUS_POLICIES.items() if policy.searchable
)


def policy_for(status: str) -> StatusPolicy:
    try:
        return STATUS_POLICIES[S(status)]
    except ValueError:
        return StatusPolicy(False)


def can_transition(current: S, new: S) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


class LifecycleManager:
    """
    Persists lifecycle records and applies transitions.

    Args:
        db: DatabaseService (anything with an async ``get_session()``)
        vector_store: Index to keep status/stats in sync with
        reference_store: Used to tag deleted objects for retention cleanup
    """

    def __init__(
        self,
        db,
        vector_store: Optional[CollectionStoreAdapter] = None,
        reference_store: Optional[ReferenceStore] = None,
        config: Optional[LifecycleConfig] = None,
        sync_config: Optional[SyncConfig] = None,
    ):
        self.db = db
        self.vector_store = vector_store
        self.reference_store = reference_store
        self.config = config or LifecycleConfig()
        self.sync_config = sync_config or SyncConfig()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_version(self, scope: str, playbook_id: str, version: str) -> Optional[PlaybookVersionRecord]:
        async with self.db.get_session() as session:
            return await self._get(session, scope, playbook_id, version)

    async def list_versions(self, scope: str, playbook_id: str) -> List[PlaybookVersionRecord]:
        """All non-deleted versions, newest first."""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(PlaybookVersionRecord).where(
                    PlaybookVersionRecord.scope == scope,
                    PlaybookVersionRecord.playbook_id == playbook_id,
                    PlaybookVersionRecord.deleted_at.is_(None),
                )
            )
            records = list(result.scalars().all())
        return sorted(records, key=lambda r: version_key(r.version), reverse=True)

    async def known_scopes(self) -> List[str]:
        """Scopes that have at least one registered version."""
        async with self.db.get_session() as session:
            result = await session.execute(select(PlaybookVersionRecord.scope).distinct())
            return sorted(result.scalars().all())

    async def _get(self, session, scope: str, playbook_id: str, version: str) -> Optional[PlaybookVersionRecord]:
        result = await session.execute(
            select(PlaybookVersionRecord).where(
                PlaybookVersionRecord.scope == scope,
                PlaybookVersionRecord.playbook_id == playbook_id,
                PlaybookVersionRecord.version == version,
            )
        )
        return result.scalar_one_or_none()

    async def _require(self, session, scope: str, playbook_id: str, version: str) -> PlaybookVersionRecord:
        record = await self._get(session, scope, playbook_id, version)
        if record is None or record.deleted_at is not None:
            raise AssetNotFound(
                f"Playbook '{playbook_id}' version {version} is not registered in scope '{scope}'",
                details={"scope": scope, "playbook_id": playbook_id, "version": version},
            )
        return record

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    async def register_version(
        self,
        scope: str,
        playbook: Playbook,
        content_hash: str,
        object_key: str,
        actor: Optional[str] = None,
    ) -> PlaybookVersionRecord:
        """
        Create the lifecycle record of a new version in ``draft``.

        Re-registering identical content is a no-op. A draft may be replaced;
        any other status makes the version immutable.

        Raises:
            VersionConflict: the version exists, is not a draft, and the content differs
        """
        async with self.db.get_session() as session:
            record = await self._get(session, scope, playbook.playbook_id, playbook.version)
            if record is not None and record.deleted_at is None:
                if record.content_hash == content_hash:
                    return record
                if record.status != S.DRAFT.value:
                    raise VersionConflict(
                        f"Playbook '{playbook.playbook_id}' version {playbook.version} is "
                        f"{record.status} and cannot be changed. Publish a new version.",
                        details={
                            "scope": scope,
                            "playbook_id": playbook.playbook_id,
                            "version": playbook.version,
                            "status": record.status,
                        },
                    )
            if record is None:
                record = PlaybookVersionRecord(
                    scope=scope,
                    playbook_id=playbook.playbook_id,
                    version=playbook.version,
                )
                session.add(record)
            record.status = S.DRAFT.value
            record.deleted_at = None
            record.storage_strategy = playbook.storage_strategy.value
            record.author_class = playbook.author_class.value
            record.quality_score = playbook.quality_score
            record.content_hash = content_hash
            record.object_key = object_key
            record.updated_at = datetime.utcnow()

            await self._replace_references(session, scope, playbook)
            session.add(StatusTransitionLog(
                scope=scope,
                playbook_id=playbook.playbook_id,
                version=playbook.version,
                from_status=None,
                to_status=S.DRAFT.value,
                reason="registered",
                actor=actor,
            ))
            await session.flush()
            logger.info(f"Registered {playbook.playbook_id}@{playbook.version} in scope {scope}")
            return record

    async def record_references(self, scope: str, playbook: Playbook) -> None:
        """
        Replace the playbook_ref edges stored for one version.

        Used by the sync for every playbook object it indexes, including
        objects that were never registered through the publisher.
        """
        async with self.db.get_session() as session:
            await self._replace_references(session, scope, playbook)

    async def _replace_references(self, session, scope: str, playbook: Playbook) -> None:
        existing = await session.execute(
            select(PlaybookReference).where(
                PlaybookReference.scope == scope,
                PlaybookReference.parent_playbook_id == playbook.playbook_id,
                PlaybookReference.parent_version == playbook.version,
            )
        )
        for row in existing.scalars().all():
            await session.delete(row)
        # Deletes must hit the table before re-inserting the same edges
        await session.flush()
        seen = set()
        for step in playbook.steps:
            if step.playbook_ref is None:
                continue
            edge = (step.playbook_ref.playbook_id, step.playbook_ref.version)
            if edge in seen:
                continue
            seen.add(edge)
            session.add(PlaybookReference(
                scope=scope,
                parent_playbook_id=playbook.playbook_id,
                parent_version=playbook.version,
                child_playbook_id=edge[0],
                child_version=edge[1],
            ))

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def transition(
        self,
        scope: str,
        playbook_id: str,
        version: str,
        new_status: S,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> PlaybookVersionRecord:
        """
        Move a version to ``new_status``.

        Raises:
            AssetNotFound: unknown version
            InvalidStatusTransition: not allowed by TRANSITIONS
        """
        new_status = S(new_status)
        async with self.db.get_session() as session:
            record = await self._require(session, scope, playbook_id, version)
            current = S(record.status)
            if current == new_status:
                return record
            if not can_transition(current, new_status):
                allowed = sorted(s.value for s in TRANSITIONS.get(current, frozenset()))
                raise InvalidStatusTransition(
                    f"Cannot move {playbook_id}@{version} from {current.value} to {new_status.value}. "
                    f"Allowed: {', '.join(allowed) or 'none'}",
                    details={"from": current.value, "to": new_status.value, "allowed": allowed},
                )

            changed = [self._apply(session, record, new_status, reason, actor, automatic=False)]
            if new_status == S.ACTIVE and self.config.auto_deprecate_on_activate:
                changed.extend(await self._deprecate_others(session, record, actor))
            await session.flush()

        for item in changed:
            await self._push(item)
        return record

    def _apply(
        self,
        session,
        record: PlaybookVersionRecord,
        new_status: S,
        reason: Optional[str],
        actor: Optional[str],
        automatic: bool,
    ) -> PlaybookVersionRecord:
        session.add(StatusTransitionLog(
            scope=record.scope,
            playbook_id=record.playbook_id,
            version=record.version,
            from_status=record.status,
            to_status=new_status.value,
            reason=reason,
            actor=actor,
            automatic=automatic,
        ))
        log = logger.warning if new_status == S.BROKEN else logger.info
        log(
            f"{record.playbook_id}@{record.version} ({record.scope}): "
            f"{record.status} -> {new_status.value}" + (f" ({reason})" if reason else "")
        )
        record.status = new_status.value
        record.updated_at = datetime.utcnow()
        return record

    async def _deprecate_others(self, session, activated: PlaybookVersionRecord, actor: Optional[str]):
        result = await session.execute(
            select(PlaybookVersionRecord).where(
                PlaybookVersionRecord.scope == activated.scope,
                PlaybookVersionRecord.playbook_id == activated.playbook_id,
                PlaybookVersionRecord.version != activated.version,
                PlaybookVersionRecord.status == S.ACTIVE.value,
                PlaybookVersionRecord.deleted_at.is_(None),
            )
        )
        changed = []
        for other in result.scalars().all():
            changed.append(self._apply(
                session, other, S.DEPRECATED,
                f"superseded by {activated.version}", actor, automatic=True,
            ))
        return changed

    # -------------------------------------------------------------------------
    # Executions
    # -------------------------------------------------------------------------

    async def record_execution(
        self, scope: str, playbook_id: str, version: str, success: bool
    ) -> PlaybookVersionRecord:
        """Update execution stats; may move an active version to broken."""
        async with self.db.get_session() as session:
            record = await self._require(session, scope, playbook_id, version)
            record.execution_count = (record.execution_count or 0) + 1
            if success:
                record.success_count = (record.success_count or 0) + 1
                record.consecutive_failures = 0
            else:
                record.consecutive_failures = (record.consecutive_failures or 0) + 1
            record.updated_at = datetime.utcnow()

            threshold = self.config.broken_failure_threshold
            if (
                not success
                and record.status == S.ACTIVE.value
                and record.consecutive_failures >= threshold
            ):
                self._apply(
                    session, record, S.BROKEN,
                    f"{record.consecutive_failures} consecutive failed executions",
                    actor=None, automatic=True,
                )
            await session.flush()

        await self._push(record)
        return record

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    async def referenced_by(self, scope: str, playbook_id: str, version: str) -> List[Tuple[str, str, str]]:
        """Live (scope, playbook_id, version) parents referencing this version."""
        async with self.db.get_session() as session:
            # Parents without a lifecycle record (synced from the store) count as live
            query = (
                select(PlaybookReference, PlaybookVersionRecord)
                .outerjoin(
                    PlaybookVersionRecord,
                    and_(
                        PlaybookVersionRecord.scope == PlaybookReference.scope,
                        PlaybookVersionRecord.playbook_id == PlaybookReference.parent_playbook_id,
                        PlaybookVersionRecord.version == PlaybookReference.parent_version,
                    ),
                )
                .where(
                    PlaybookReference.child_playbook_id == playbook_id,
                    PlaybookReference.child_version == version,
                    PlaybookVersionRecord.deleted_at.is_(None),
                )
            )
            if scope != GLOBAL_SCOPE:
                # Tenant assets are only visible to the same tenant
                query = query.where(PlaybookReference.scope == scope)
            result = await session.execute(query)
            return [
                (ref.scope, ref.parent_playbook_id, ref.parent_version)
                for ref, _ in result.all()
            ]

    async def delete_version(self, scope: str, playbook_id: str, version: str, actor: Optional[str] = None) -> None:
        """
        Remove a version from search and tag its object for retention cleanup.

        Raises:
            AssetInUse: another playbook references this version
        """
        parents = await self.referenced_by(scope, playbook_id, version)
        if parents:
            raise AssetInUse(
                f"Playbook '{playbook_id}' version {version} is referenced by "
                f"{', '.join(f'{pid}@{ver}' for _, pid, ver in parents)} and cannot be deleted",
                details={"referenced_by": [
                    {"scope": s, "playbook_id": pid, "version": ver} for s, pid, ver in parents
                ]},
            )

        async with self.db.get_session() as session:
            record = await self._require(session, scope, playbook_id, version)
            if record.status != S.ARCHIVED.value:
                self._apply(session, record, S.ARCHIVED, "deleted", actor, automatic=False)
            record.deleted_at = datetime.utcnow()
            object_key = record.object_key
            await session.flush()

        if self.vector_store is not None:
            await self.vector_store.delete(self.collection_for(scope), [entry_id(playbook_id, version)])
        if self.reference_store is not None and object_key:
            await self.reference_store.tag_for_retention(object_key, tag=self.config.retention_tag)
        logger.info(f"Deleted {playbook_id}@{version} from scope {scope}")

    # -------------------------------------------------------------------------
    # Index
    # -------------------------------------------------------------------------

    def collection_for(self, scope: str) -> str:
        return collection_name_for_scope(
            scope, self.sync_config.global_collection, self.sync_config.tenant_collection_prefix
        )

    async def _push(self, record: PlaybookVersionRecord) -> None:
        """Push status and stats into the index payload."""
        if self.vector_store is None:
            return
        updated = await self.vector_store.update_metadata(
            self.collection_for(record.scope),
            entry_id(record.playbook_id, record.version),
            index_metadata(record),
        )
        if not updated:
            logger.debug(f"No index entry yet for {record.playbook_id}@{record.version}; next sync will add it")


def index_metadata(record: PlaybookVersionRecord) -> Dict[str, object]:
    """Payload fields owned by the lifecycle record."""
    return {
        "status": record.status,
        "execution_count": record.execution_count or 0,
        "success_count": record.success_count or 0,
        "quality_score": record.quality_score,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    }
