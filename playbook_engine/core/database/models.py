# playbook_engine/core/database/models.py
"""
SQLAlchemy ORM models for the Playbook Engine.

This module defines the persisted state that is not part of the Reference
Store objects themselves:
- PlaybookVersionRecord: lifecycle status and execution stats per version
- PlaybookReference: playbook_ref edges, consulted before deletion
- StatusTransitionLog: audit trail of every lifecycle transition
- SyncMarker: last fully-processed object per collection
- VectorCollection: per-collection existence flag
- SyncFailure: per-object failure ledger used for retries and quarantine

Models follow these patterns:
- UUID primary keys with default=uuid.uuid4
- JSON columns that become JSONB on PostgreSQL
- Composite indexes for common queries
- ``scope`` is "global" for the curated library or the tenant id
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID

from .base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == 'postgresql':
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class PlaybookVersionRecord(Base):
    """
    Lifecycle record for one playbook version.

    The Reference Store object holds the immutable definition; this row
    holds everything that changes after publication.

    Attributes:
        scope: "global" or tenant id
        status: Current lifecycle status (see playbooks.lifecycle)
        consecutive_failures: Reset on every successful execution
        content_hash: sha256 of the canonical stored JSON, for conflict checks
        deleted_at: Set when the version is removed from the index
    """

    __tablename__ = "playbook_versions"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    scope = Column(String(255), nullable=False)
    playbook_id = Column(String(255), nullable=False)
    version = Column(String(64), nullable=False)

    status = Column(String(32), nullable=False, default="draft")
    storage_strategy = Column(String(32), nullable=False, default="private_only")
    author_class = Column(String(32), nullable=False, default="tenant")
    quality_score = Column(Float, nullable=True)

    execution_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    consecutive_failures = Column(Integer, nullable=False, default=0)

    content_hash = Column(String(64), nullable=True)
    object_key = Column(String(1024), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("scope", "playbook_id", "version", name="uq_playbook_versions_key"),
        Index("ix_playbook_versions_scope_status", "scope", "status"),
    )

    @property
    def success_rate(self) -> float:
        if not self.execution_count:
            return 0.0
        return min(1.0, self.success_count / self.execution_count)

    def __repr__(self) -> str:
        return (
            f"<PlaybookVersionRecord(scope={self.scope}, playbook_id={self.playbook_id}, "
            f"version={self.version}, status={self.status})>"
        )


class PlaybookReference(Base):
    """A ``playbook_ref`` edge from a parent version to a child version."""

    __tablename__ = "playbook_references"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    scope = Column(String(255), nullable=False)
    parent_playbook_id = Column(String(255), nullable=False)
    parent_version = Column(String(64), nullable=False)
    child_playbook_id = Column(String(255), nullable=False)
    child_version = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "scope", "parent_playbook_id", "parent_version", "child_playbook_id", "child_version",
            name="uq_playbook_references_edge",
        ),
        Index("ix_playbook_references_child", "child_playbook_id", "child_version"),
    )


class StatusTransitionLog(Base):
    """Audit row written for every lifecycle transition."""

    __tablename__ = "playbook_status_transitions"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    scope = Column(String(255), nullable=False)
    playbook_id = Column(String(255), nullable=False)
    version = Column(String(64), nullable=False)
    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=False)
    reason = Column(Text, nullable=True)
    actor = Column(String(255), nullable=True)
    automatic = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_status_transitions_key", "scope", "playbook_id", "version"),
    )

    def __repr__(self) -> str:
        return (
            f"<StatusTransitionLog({self.playbook_id}@{self.version}: "
            f"{self.from_status} -> {self.to_status})>"
        )


class SyncMarker(Base):
    """
    Position of the last fully-processed object in a collection's change feed.

    ``seen_keys`` lists the [object_key, etag] pairs already processed at
    ``last_modified``; other objects written in that same tick are still
    picked up by the next sync.
    """

    __tablename__ = "sync_markers"

    collection = Column(String(255), primary_key=True)
    scope = Column(String(255), nullable=False)
    last_modified = Column(DateTime, nullable=False)
    object_key = Column(String(1024), nullable=False)
    seen_keys = Column(JSONType, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class VectorCollection(Base):
    """Existence flag for a vector index collection (one global, one per tenant)."""

    __tablename__ = "vector_collections"

    name = Column(String(255), primary_key=True)
    scope = Column(String(255), nullable=False, unique=True)
    dimensions = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class SyncFailure(Base):
    """
    Failure ledger entry for one object in one collection.

    Deleted once the object syncs successfully. ``quarantined`` objects
    are skipped by later syncs until the object changes again.
    """

    __tablename__ = "sync_failures"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    collection = Column(String(255), nullable=False)
    object_key = Column(String(1024), nullable=False)
    object_last_modified = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)
    quarantined = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("collection", "object_key", name="uq_sync_failures_object"),
    )
