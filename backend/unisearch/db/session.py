"""Database engine, session factory and schema initialization."""

from __future__ import annotations

from sqlalchemy import event, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from unisearch.core.config import Settings
from unisearch.core.logging import get_logger
from unisearch.db.base import Base
from unisearch.db.models import INDEX_STATE_ID, IndexState, IndexStatus

logger = get_logger(__name__)

# Name-only full-text table, maintained by triggers on drive_files
FTS_STATEMENTS = [
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS drive_files_fts
    USING fts5(id UNINDEXED, name, tokenize = 'unicode61')
    """,
    """
    CREATE TRIGGER IF NOT EXISTS drive_files_fts_ai AFTER INSERT ON drive_files BEGIN
        INSERT INTO drive_files_fts (id, name) VALUES (new.id, new.name);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS drive_files_fts_ad AFTER DELETE ON drive_files BEGIN
        DELETE FROM drive_files_fts WHERE id = old.id;
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS drive_files_fts_au AFTER UPDATE ON drive_files BEGIN
        DELETE FROM drive_files_fts WHERE id = old.id;
        INSERT INTO drive_files_fts (id, name) VALUES (new.id, new.name);
    END
    """,
]


def create_engine(settings: Settings | None = None, *, url: str | None = None) -> AsyncEngine:
    """Create the async engine for the index database.

    Args:
        settings: Settings providing the database location.
        url: Explicit URL, mainly for tests.

    Returns:
        A configured AsyncEngine.
    """
    if url is None:
        if settings is None:
            raise ValueError("settings or url is required")
        if not settings.database_url:
            settings.config_path.mkdir(parents=True, exist_ok=True)
        url = settings.resolved_database_url

    kwargs: dict = {
        "future": True,
        "connect_args": {"timeout": 30},  # Wait up to 30 seconds for locks
    }
    if ":memory:" in url:
        # One shared connection, otherwise each checkout sees an empty database
        kwargs["poolclass"] = StaticPool

    engine = create_async_engine(url, echo=bool(settings and settings.debug), **kwargs)
    event.listen(engine.sync_engine, "connect", _set_sqlite_pragma)
    return engine


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Enable WAL mode so searches can read while the indexer writes."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory bound to ``engine``."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_schema(engine: AsyncEngine) -> bool:
    """Create tables, the FTS index and the singleton index_state row.

    Safe to call on every start.

    Returns:
        True if the FTS5 index is available.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(
            sqlite_insert(IndexState)
            .values(
                id=INDEX_STATE_ID,
                status=IndexStatus.IDLE,
                indexed_count=0,
            )
            .on_conflict_do_nothing(index_elements=["id"])
        )

    fts_available = True
    try:
        async with engine.begin() as conn:
            for statement in FTS_STATEMENTS:
                await conn.execute(text(statement))
    except OperationalError as e:
        # SQLite built without FTS5; the LIKE search path still works
        fts_available = False
        logger.warning("fts_unavailable", error=str(e))

    logger.info("schema_initialized", fts_available=fts_available)
    return fts_available

