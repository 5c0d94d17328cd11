"""Persistence for the Drive index: file rows and the indexer checkpoint."""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import case, delete, func, select, text, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from unisearch.core.logging import get_logger
from unisearch.db.models import INDEX_STATE_ID, DriveFile, IndexState, IndexStatus
from unisearch.services.drive_api import DriveChange, DriveFileInfo

logger = get_logger(__name__)

# Rows per INSERT statement, well under SQLite's bound-parameter limit
UPSERT_CHUNK_SIZE = 500

STATE_FIELDS = {
    "last_index_page_token",
    "last_change_page_token",
    "status",
    "indexed_count",
    "crawl_generation",
}

FTS_SEARCH_SQL = """
    SELECT drive_files.* FROM drive_files_fts
    JOIN drive_files ON drive_files.id = drive_files_fts.id
    WHERE drive_files_fts MATCH :match
    ORDER BY drive_files_fts.rank
    LIMIT :limit
"""

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def build_fts_query(query: str) -> str | None:
    """Turn free text into an FTS5 prefix query ('"q1"* "q2"*').

    Returns None when the text has no indexable tokens.
    """
    tokens = _TOKEN_RE.findall(query)
    if not tokens:
        return None
    return " ".join(f'"{token}"*' for token in tokens)


def escape_like(value: str, escape: str = "\\") -> str:
    """Escape LIKE wildcards so they match literally."""
    return (
        value.replace(escape, escape * 2)
        .replace("%", f"{escape}%")
        .replace("_", f"{escape}_")
    )


def _file_row(info: DriveFileInfo, generation: int) -> dict[str, Any]:
    return {
        "id": info.id,
        "name": info.name,
        "mime_type": info.mime_type,
        "modified_time": info.modified_time,
        "thumbnail_link": info.thumbnail_link,
        "web_view_link": info.web_view_link,
        "crawl_generation": generation,
    }


class DriveIndexRepository:
    """Reads and writes ``drive_files`` and the ``index_state`` row.

    Each public write runs in its own transaction.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    # ========== Index state ==========

    async def get_state(self) -> IndexState:
        """Return the singleton checkpoint row."""
        async with self._session_maker() as session:
            return await self._load_state(session)

    async def update_state(self, **fields: Any) -> IndexState:
        """Merge ``fields`` into the checkpoint row.

        Fields not passed keep their value; passing None clears a token.
        """
        async with self._session_maker() as session:
            state = await self._apply_state(session, fields)
            await session.commit()
            return state

    async def reset_state(self) -> IndexState:
        return await self.update_state(
            last_index_page_token=None,
            last_change_page_token=None,
            status=IndexStatus.IDLE,
            indexed_count=0,
        )

    # ========== Files ==========

    async def apply_crawl_page(
        self,
        files: Sequence[DriveFileInfo],
        next_page_token: str | None,
        indexed_count: int,
    ) -> IndexState:
        """Upsert one crawl page and advance the checkpoint atomically."""
        async with self._session_maker() as session:
            await self._upsert(session, files)
            state = await self._apply_state(
                session,
                {
                    "last_index_page_token": next_page_token,
                    "indexed_count": indexed_count,
                },
            )
            await session.commit()
            return state

    async def begin_crawl_generation(self) -> int:
        """Start a new full-crawl generation and return its number.

        Every row written from now on carries the new number, so rows still
        holding an older one when the crawl completes were not seen by it.
        """
        async with self._session_maker() as session:
            state = await self._load_state(session)
            generation = state.crawl_generation + 1
            await self._apply_state(session, {"crawl_generation": generation})
            await session.commit()
        return generation

    async def delete_stale_files(self) -> int:
        """Delete rows the current crawl generation never wrote."""
        async with self._session_maker() as session:
            state = await self._load_state(session)
            result = await session.execute(
                delete(DriveFile).where(DriveFile.crawl_generation < state.crawl_generation)
            )
            await session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("drive_stale_files_removed", removed=removed)
        return removed

    async def upsert_files(self, files: Sequence[DriveFileInfo]) -> int:
        async with self._session_maker() as session:
            await self._upsert(session, files)
            await session.commit()
        return len(files)

    async def delete_files(self, file_ids: Iterable[str]) -> int:
        ids = list(file_ids)
        if not ids:
            return 0
        async with self._session_maker() as session:
            result = await session.execute(delete(DriveFile).where(DriveFile.id.in_(ids)))
            await session.commit()
        return result.rowcount or 0

    async def apply_changes(self, changes: Sequence[DriveChange]) -> tuple[int, int]:
        """Apply a batch of change-feed entries in one transaction.

        Trashed or removed files are deleted, everything else is upserted.
        Entries carrying neither a file nor a removal are skipped.

        Returns:
            (upserted, deleted) counts.
        """
        upserts: dict[str, DriveFileInfo] = {}
        deletions: set[str] = set()

        # Later entries for the same file win
        for change in changes:
            file_id = change.file_id or (change.file.id if change.file else None)
            if file_id is None:
                continue
            if change.is_deletion:
                deletions.add(file_id)
                upserts.pop(file_id, None)
            elif change.file is not None:
                upserts[file_id] = change.file
                deletions.discard(file_id)

        async with self._session_maker() as session:
            await self._upsert(session, list(upserts.values()))
            if deletions:
                await session.execute(delete(DriveFile).where(DriveFile.id.in_(deletions)))
            await session.commit()

        return len(upserts), len(deletions)

    async def clear_files(self) -> None:
        async with self._session_maker() as session:
            await session.execute(delete(DriveFile))
            await session.commit()
        logger.info("drive_index_cleared")

    async def count_files(self) -> int:
        async with self._session_maker() as session:
            result = await session.execute(select(func.count()).select_from(DriveFile))
            return result.scalar_one()

    async def get_file(self, file_id: str) -> DriveFile | None:
        async with self._session_maker() as session:
            return await session.get(DriveFile, file_id)

    # ========== Name search ==========

    async def search_fts(self, query: str, limit: int) -> list[DriveFile]:
        """Prefix search through the FTS5 table.

        Raises the driver error when the FTS table is missing.
        """
        match = build_fts_query(query)
        if match is None:
            return []
        stmt = select(DriveFile).from_statement(
            text(FTS_SEARCH_SQL).bindparams(match=match, limit=limit)
        )
        async with self._session_maker() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def search_like(self, query: str, limit: int) -> list[DriveFile]:
        """Substring search ordered prefix, suffix, then anywhere; newest first."""
        escaped = escape_like(query)
        tier = case(
            (DriveFile.name.like(f"{escaped}%", escape="\\"), 1),
            (DriveFile.name.like(f"%{escaped}", escape="\\"), 2),
            else_=3,
        )
        stmt = (
            select(DriveFile)
            .where(DriveFile.name.like(f"%{escaped}%", escape="\\"))
            .order_by(tier, DriveFile.modified_time.desc())
            .limit(limit)
        )
        async with self._session_maker() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ========== Internals ==========

    async def _load_state(self, session: AsyncSession) -> IndexState:
        state = await session.get(IndexState, INDEX_STATE_ID)
        if state is None:
            # Schema init creates the row; recreate it if it was removed by hand
            state = IndexState(id=INDEX_STATE_ID, status=IndexStatus.IDLE, indexed_count=0)
            session.add(state)
            await session.flush()
        return state

    async def _apply_state(self, session: AsyncSession, fields: dict[str, Any]) -> IndexState:
        unknown = set(fields) - STATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown index state fields: {sorted(unknown)}")

        await self._load_state(session)
        values = dict(fields)
        values["updated_at"] = datetime.now(timezone.utc)
        await session.execute(
            update(IndexState).where(IndexState.id == INDEX_STATE_ID).values(**values)
        )
        state = await session.get(IndexState, INDEX_STATE_ID, populate_existing=True)
        return state

    async def _upsert(self, session: AsyncSession, files: Sequence[DriveFileInfo]) -> None:
        if not files:
            return
        generation = (await self._load_state(session)).crawl_generation
        rows = [_file_row(f, generation) for f in files]
        for start in range(0, len(rows), UPSERT_CHUNK_SIZE):
            chunk = rows[start:start + UPSERT_CHUNK_SIZE]
            stmt = sqlite_insert(DriveFile).values(chunk)
            stmt = stmt.on_conflict_do_update(
                index_elements=[DriveFile.id],
                set_={
                    "name": stmt.excluded.name,
                    "mime_type": stmt.excluded.mime_type,
                    "modified_time": stmt.excluded.modified_time,
                    "thumbnail_link": stmt.excluded.thumbnail_link,
                    "web_view_link": stmt.excluded.web_view_link,
                    "crawl_generation": stmt.excluded.crawl_generation,
                },
            )
            await session.execute(stmt)
