# playbook_engine/core/database/base.py
"""
SQLAlchemy base class and session dependency.

Provides the declarative base for all models and the FastAPI session dependency.
"""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import declarative_base

# Declarative base for all models
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency function for FastAPI to get async database session.

    Usage in FastAPI routes:
        @router.get("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_db)):
            ...
    """
    from playbook_engine.core.shared.database_service import database_service

    async with database_service.get_session() as session:
        yield session
