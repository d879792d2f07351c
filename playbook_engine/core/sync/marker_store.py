# playbook_engine/core/sync/marker_store.py
"""
Persisted Sync Engine state.

- sync markers: last fully-processed timestamp per collection, with the
  (object_key, etag) pairs already processed at it
- collection registry: existence flag per collection (one global, one per tenant)
- failure ledger: per-object failures, attempts and quarantine

Markers are stored as naive UTC datetimes and returned timezone-aware.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select

from playbook_engine.core.database.models import SyncFailure, SyncMarker, VectorCollection
from playbook_engine.core.storage.reference_store import ChangeMarker, as_utc

logger = logging.getLogger("playbook_engine.sync.markers")


def _naive_utc(value: datetime) -> datetime:
    return as_utc(value).replace(tzinfo=None)


class SyncStateStore:
    """
    Args:
        db: DatabaseService (anything with an async ``get_session()``)
    """

    def __init__(self, db):
        self.db = db

    # -------------------------------------------------------------------------
    # Markers
    # -------------------------------------------------------------------------

    async def get_marker(self, collection: str) -> Optional[ChangeMarker]:
        async with self.db.get_session() as session:
            row = await session.get(SyncMarker, collection)
            if row is None:
                return None
            return ChangeMarker(
                row.last_modified.replace(tzinfo=timezone.utc),
                row.object_key,
                frozenset((key, etag) for key, etag in row.seen_keys or []),
            )

    async def set_marker(self, collection: str, scope: str, marker: ChangeMarker) -> None:
        async with self.db.get_session() as session:
            row = await session.get(SyncMarker, collection)
            if row is None:
                row = SyncMarker(collection=collection, scope=scope)
                session.add(row)
            row.last_modified = _naive_utc(marker.last_modified)
            row.object_key = marker.object_key
            row.seen_keys = [list(pair) for pair in sorted(marker.seen)]
            row.updated_at = datetime.utcnow()

    # -------------------------------------------------------------------------
    # Collection registry
    # -------------------------------------------------------------------------

    async def is_registered(self, collection: str) -> bool:
        async with self.db.get_session() as session:
            return await session.get(VectorCollection, collection) is not None

    async def register_collection(self, collection: str, scope: str, dimensions: int) -> None:
        async with self.db.get_session() as session:
            if await session.get(VectorCollection, collection) is None:
                session.add(VectorCollection(name=collection, scope=scope, dimensions=dimensions))
                logger.info(f"Registered collection {collection} for scope {scope}")

    async def list_collections(self) -> List[VectorCollection]:
        async with self.db.get_session() as session:
            result = await session.execute(select(VectorCollection).order_by(VectorCollection.name))
            return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Failure ledger
    # -------------------------------------------------------------------------

    async def failures(self, collection: str) -> Dict[str, SyncFailure]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(SyncFailure).where(SyncFailure.collection == collection)
            )
            return {row.object_key: row for row in result.scalars().all()}

    async def record_failure(
        self,
        collection: str,
        object_key: str,
        last_modified: datetime,
        error: str,
        details: Optional[Dict[str, Any]],
        max_attempts: int,
    ) -> SyncFailure:
        """
        Count one more failure for an object.

        A newer version of the object (different last_modified) restarts the
        count. Reaching ``max_attempts`` quarantines the entry.
        """
        modified = _naive_utc(last_modified)
        async with self.db.get_session() as session:
            result = await session.execute(
                select(SyncFailure).where(
                    SyncFailure.collection == collection,
                    SyncFailure.object_key == object_key,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = SyncFailure(collection=collection, object_key=object_key, attempts=0, quarantined=False)
                session.add(row)
            elif row.object_last_modified != modified:
                row.attempts = 0
                row.quarantined = False
            row.object_last_modified = modified
            row.attempts = (row.attempts or 0) + 1
            row.last_error = error
            row.error_details = details or {}
            row.quarantined = row.attempts >= max_attempts
            row.updated_at = datetime.utcnow()
            await session.flush()
            return row

    async def clear_failure(self, collection: str, object_key: str) -> None:
        async with self.db.get_session() as session:
            await session.execute(
                delete(SyncFailure).where(
                    SyncFailure.collection == collection,
                    SyncFailure.object_key == object_key,
                )
            )

    @staticmethod
    def is_quarantined(entry: Optional[SyncFailure], last_modified: datetime) -> bool:
        """Quarantine holds only for the object version that kept failing."""
        return (
            entry is not None
            and bool(entry.quarantined)
            and entry.object_last_modified == _naive_utc(last_modified)
        )
