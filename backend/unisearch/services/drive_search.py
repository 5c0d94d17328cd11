"""Search over the local copy of the Drive index."""

from __future__ import annotations

from sqlalchemy.exc import OperationalError

from unisearch.core.logging import get_logger
from unisearch.db.models import DriveFile
from unisearch.schemas.search import ResultMetadata, SearchResult
from unisearch.services.drive_index import DriveIndexRepository
from unisearch.services.scoring import (
    DriveNameScorer,
    ScoringCandidate,
    ScoringStrategy,
    parse_timestamp,
)
from unisearch.services.search_cache import SearchCache

logger = get_logger(__name__)

PROVIDER_NAME = "drive"


class DriveSearchProvider:
    """Name search over ``drive_files``.

    Tries the FTS5 prefix index first and falls back to a tiered ``LIKE``
    query when FTS is unavailable, fails or finds nothing.
    """

    name = PROVIDER_NAME

    def __init__(
        self,
        repository: DriveIndexRepository,
        scorer: ScoringStrategy | None = None,
        cache: SearchCache | None = None,
        fts_enabled: bool = True,
    ):
        self._repo = repository
        self._scorer = scorer or DriveNameScorer()
        self._cache = cache
        self.fts_enabled = fts_enabled

    async def search(self, query: str, limit: int = 10) -> list[SearchResult]:
        if not query.strip() or limit <= 0:
            return []

        if self._cache is not None:
            cached = self._cache.get(query, self.name, limit)
            if cached is not None:
                return cached

        term = query.strip()
        rows: list[DriveFile] = []
        if self.fts_enabled:
            try:
                rows = await self._repo.search_fts(term, limit)
            except OperationalError as e:
                logger.warning("drive_fts_query_failed", error=str(e))
        if not rows:
            rows = await self._repo.search_like(term, limit)

        results = [self._to_result(query, row) for row in rows]
        results.sort(key=lambda r: r.score, reverse=True)

        logger.debug("drive_search_completed", results=len(results))
        if self._cache is not None:
            # Fewer rows than asked for means nothing more matches
            depth = limit if len(rows) >= limit else None
            self._cache.set(query, self.name, results, depth=depth)
        return results

    def _to_result(self, query: str, row: DriveFile) -> SearchResult:
        candidate = ScoringCandidate(
            name=row.name,
            is_folder=row.is_folder,
            modified=parse_timestamp(row.modified_time),
            mime_type=row.mime_type,
        )
        return SearchResult(
            id=row.id,
            name=row.name,
            type="folder" if row.is_folder else "file",
            source="drive",
            score=self._scorer.score(query, candidate),
            metadata=ResultMetadata(
                mime_type=row.mime_type,
                modified_time=row.modified_time,
                thumbnail_link=row.thumbnail_link,
                web_view_link=row.web_view_link,
            ),
        )
