"""Database package for unisearch."""

from unisearch.db.base import Base
from unisearch.db.session import create_engine, create_session_maker, init_schema

__all__ = [
    "Base",
    "create_engine",
    "create_session_maker",
    "init_schema",
]
