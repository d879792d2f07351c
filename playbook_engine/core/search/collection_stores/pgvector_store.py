"""
PgVector collection store - local pgvector-backed implementation.

Each collection is its own table holding one row per playbook version:

    id          text primary key   "<playbook_id>-<version>"
    status      text               lifecycle status, filtered in-query
    embedding   vector(dims)       cosine-distance HNSW index
    payload     jsonb              playbook definition + ranking metadata

Collection names come from ``collection_name_for_scope`` and are validated
before being interpolated into SQL.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from sqlalchemy import text

from .base import CollectionStoreAdapter, VectorEntry, VectorFilter, VectorHit

logger = logging.getLogger("playbook_engine.search.collection_stores.pgvector")

_SAFE_NAME = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")


def _table(name: str) -> str:
    if not _SAFE_NAME.match(name):
        raise ValueError(f"Invalid collection name: {name!r}")
    return name


def _vector_literal(vector: List[float]) -> str:
    return "[" + ",".join(str(f) for f in vector) + "]"


class PgVectorCollectionStore(CollectionStoreAdapter):
    """
    pgvector-backed collection store.

    Args:
        db: DatabaseService (anything with an async ``get_session()``)
    """

    def __init__(self, db):
        self._db = db
        self._extension_ready = False

    async def _ensure_extension(self, session) -> None:
        if self._extension_ready:
            return
        await session.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        self._extension_ready = True

    # =====================================================================
    # Collections
    # =====================================================================

    async def collection_exists(self, name: str) -> bool:
        async with self._db.get_session() as session:
            result = await session.execute(
                text("SELECT to_regclass(:name) IS NOT NULL"), {"name": _table(name)}
            )
            return bool(result.scalar())

    async def create_collection(self, name: str, dimensions: int) -> bool:
        table = _table(name)
        if await self.collection_exists(table):
            return False

        async with self._db.get_session() as session:
            await self._ensure_extension(session)
            await session.execute(text(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    embedding vector({int(dimensions)}) NOT NULL,
                    payload JSONB NOT NULL DEFAULT '{{}}',
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """))
            await session.execute(text(
                f"CREATE INDEX IF NOT EXISTS ix_{table}_embedding "
                f"ON {table} USING hnsw (embedding vector_cosine_ops)"
            ))
            await session.execute(text(
                f"CREATE INDEX IF NOT EXISTS ix_{table}_status ON {table} (status)"
            ))
        logger.info(f"Created vector collection {table} ({dimensions} dims)")
        return True

    # =====================================================================
    # Upsert
    # =====================================================================

    async def upsert(self, collection: str, entries: List[VectorEntry]) -> int:
        """INSERT ... ON CONFLICT (id) DO UPDATE, one statement per entry."""
        if not entries:
            return 0
        table = _table(collection)
        sql = text(f"""
            INSERT INTO {table} (id, status, embedding, payload, updated_at)
            VALUES (:id, :status, CAST(:embedding AS vector), CAST(:payload AS jsonb), now())
            ON CONFLICT (id) DO UPDATE SET
                status = EXCLUDED.status,
                embedding = EXCLUDED.embedding,
                payload = EXCLUDED.payload,
                updated_at = now()
        """)

        written = 0
        async with self._db.get_session() as session:
            for entry in entries:
                result = await session.execute(sql, {
                    "id": entry.id,
                    "status": entry.payload.get("status", "draft"),
                    "embedding": _vector_literal(entry.vector),
                    "payload": json.dumps(entry.payload, default=str),
                })
                written += result.rowcount
        return written

    # =====================================================================
    # Search
    # =====================================================================

    async def search(
        self,
        collection: str,
        query_vector: List[float],
        vector_filter: Optional[VectorFilter] = None,
        limit: int = 10,
    ) -> List[VectorHit]:
        """
        Cosine-similarity search with the filter applied in the WHERE clause.

        Entries that declare no cloud providers (or no resource types) are
        treated as generic and pass the corresponding filter.
        """
        table = _table(collection)
        vector_filter = vector_filter or VectorFilter()
        where = []
        params: Dict[str, Any] = {
            "embedding": _vector_literal(query_vector),
            "limit": limit,
        }

        if vector_filter.statuses:
            where.append("status = ANY(:statuses)")
            params["statuses"] = list(vector_filter.statuses)
        if vector_filter.cloud_provider:
            where.append(
                "(jsonb_array_length(COALESCE(payload->'cloud_providers', CAST('[]' AS jsonb))) = 0 "
                "OR jsonb_exists(payload->'cloud_providers', :provider))"
            )
            params["provider"] = vector_filter.cloud_provider
        if vector_filter.resource_types:
            where.append(
                "(jsonb_array_length(COALESCE(payload->'resource_types', CAST('[]' AS jsonb))) = 0 "
                "OR jsonb_exists_any(payload->'resource_types', CAST(:resource_types AS text[])))"
            )
            params["resource_types"] = list(vector_filter.resource_types)

        where_sql = ("WHERE " + " AND ".join(where)) if where else ""
        sql = f"""
            SELECT
                id,
                payload,
                1 - (embedding <=> CAST(:embedding AS vector)) AS score
            FROM {table}
            {where_sql}
            ORDER BY embedding <=> CAST(:embedding AS vector)
            LIMIT :limit
        """

        async with self._db.get_session() as session:
            result = await session.execute(text(sql), params)
            rows = result.fetchall()

        hits = []
        for row in rows:
            payload = row.payload
            if isinstance(payload, str):
                payload = json.loads(payload)
            hits.append(VectorHit(id=row.id, score=float(row.score), payload=dict(payload or {})))
        return hits

    # =====================================================================
    # Delete / Update / Count
    # =====================================================================

    async def delete(self, collection: str, ids: List[str]) -> int:
        if not ids:
            return 0
        table = _table(collection)
        async with self._db.get_session() as session:
            result = await session.execute(
                text(f"DELETE FROM {table} WHERE id = ANY(:ids)"),
                {"ids": list(ids)},
            )
            return result.rowcount

    async def update_metadata(self, collection: str, entry_id: str, metadata: Dict[str, Any]) -> bool:
        table = _table(collection)
        assignments = ["payload = payload || CAST(:meta AS jsonb)", "updated_at = now()"]
        params: Dict[str, Any] = {"id": entry_id, "meta": json.dumps(metadata, default=str)}
        if metadata.get("status"):
            assignments.append("status = :status")
            params["status"] = metadata["status"]

        async with self._db.get_session() as session:
            result = await session.execute(
                text(f"UPDATE {table} SET {', '.join(assignments)} WHERE id = :id"),
                params,
            )
            return result.rowcount > 0

    async def count(self, collection: str) -> int:
        table = _table(collection)
        async with self._db.get_session() as session:
            result = await session.execute(text(f"SELECT COUNT(*) FROM {table}"))
            return result.scalar() or 0
