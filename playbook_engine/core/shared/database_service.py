# playbook_engine/core/shared/database_service.py
"""
Database service for async SQLAlchemy session management.

Provides a singleton service for managing database connections, sessions,
and health checks. PostgreSQL (asyncpg + pgvector) is the production backend;
SQLite (aiosqlite) URLs are accepted for local development and tests, where
the vector index is provided by a different collection store.

Usage:
    from playbook_engine.core.shared.database_service import database_service

    async with database_service.get_session() as session:
        result = await session.execute(select(SyncMarker))

    await database_service.init_db()
    health = await database_service.health_check()
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from playbook_engine.config import settings
from playbook_engine.core.database.base import Base


def _is_celery_worker() -> bool:
    """Check if we're running inside a Celery worker process."""
    return (
        os.getenv("CELERY_WORKER") == "1" or
        "celery" in os.getenv("_", "").lower() or
        os.getenv("FORKED_BY_MULTIPROCESSING") == "1"
    )


class DatabaseService:
    """
    Database service for managing async SQLAlchemy sessions.

    Methods:
        get_session(): Get async database session (context manager)
        init_db(): Initialize database (create all tables)
        health_check(): Check database connectivity
        close(): Close database engine and connections
    """

    def __init__(self, database_url: Optional[str] = None):
        self._logger = logging.getLogger("playbook_engine.database")
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self.database_url = database_url or settings.database_url
        self._initialize_engine()

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name if self._engine else "unknown"

    @property
    def engine(self) -> Optional[AsyncEngine]:
        return self._engine

    def _initialize_engine(self) -> None:
        """
        Initialize the async engine.

        PostgreSQL:
            - Connection pooling with configurable size (NullPool in Celery
              workers, where each task runs its own event loop)
            - Pool pre-ping and recycle
        SQLite:
            - Default pool, no server settings
        """
        database_url = self.database_url
        safe_url = database_url.split("@")[-1] if "@" in database_url else database_url
        self._logger.info(f"Initializing database: {safe_url}")

        if database_url.startswith("sqlite"):
            self._engine = create_async_engine(database_url, echo=settings.debug)
        elif _is_celery_worker():
            self._engine = create_async_engine(
                database_url,
                poolclass=NullPool,
                echo=settings.debug,
                connect_args={
                    "server_settings": {
                        "application_name": "playbook-engine-worker",
                        "jit": "off",
                    }
                },
            )
            self._logger.info("PostgreSQL configured with NullPool for Celery worker")
        else:
            self._engine = create_async_engine(
                database_url,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_pre_ping=True,
                pool_recycle=settings.db_pool_recycle,
                echo=settings.debug,
                connect_args={
                    "server_settings": {
                        "application_name": "playbook-engine",
                        "jit": "off",
                    }
                },
            )
            self._logger.info(
                f"PostgreSQL connection pool: size={settings.db_pool_size}, "
                f"max_overflow={settings.db_max_overflow}, recycle={settings.db_pool_recycle}s"
            )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get async database session as context manager.

        Commits on success and rolls back on error.
        """
        if not self._session_factory:
            raise RuntimeError("Database not initialized")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_db(self) -> None:
        """
        Create all tables defined in the ORM models if they don't exist.

        Safe to call multiple times. Vector collections are created
        separately by the collection store.
        """
        if not self._engine:
            raise RuntimeError("Database engine not initialized")

        self._logger.info("Creating database tables...")

        async with self._engine.begin() as conn:
            from playbook_engine.core.database import models  # noqa: F401

            await conn.run_sync(Base.metadata.create_all)

        self._logger.info("Database tables created successfully")

    async def health_check(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            {"status": "healthy" | "unhealthy", "connected": bool,
             "database_type": str, "tables": {...}, "error"?: str}
        """
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))

                tables = {}
                for table_name in ("playbook_versions", "sync_markers", "vector_collections"):
                    result = await session.execute(text(f"SELECT COUNT(*) FROM {table_name}"))
                    tables[table_name] = result.scalar() or 0

            return {
                "status": "healthy",
                "connected": True,
                "database_type": self.dialect,
                "tables": tables,
            }

        except Exception as e:
            self._logger.error(f"Database health check failed: {str(e)}")
            return {
                "status": "unhealthy",
                "connected": False,
                "database_type": self.dialect,
                "error": str(e),
            }

    async def close(self) -> None:
        """Close database engine and all connections."""
        if self._engine:
            await self._engine.dispose()
            self._logger.info("Database connections closed")

    def __repr__(self) -> str:
        return f"<DatabaseService(type={self.dialect})>"


# Global singleton instance
database_service = DatabaseService()
