"""ORM base and models for lifecycle records, sync state and audit."""

from .base import Base, get_db

__all__ = ["Base", "get_db"]
