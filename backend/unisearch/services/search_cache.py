"""Short-lived cache of per-provider search results."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

from unisearch.core.logging import get_logger
from unisearch.schemas.search import SearchResult

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    results: list[SearchResult]
    # Largest limit the results were fetched for; None when complete
    depth: int | None = None
    timestamp: float = field(default_factory=time.monotonic)


class SearchCache:
    """In-memory result cache keyed by (provider, query).

    Entries hold the full scored list a provider fetched, and remember the
    limit it was fetched for. A read asking for more than that is a miss, so
    a short list is never served for a larger request.

    Entries expire after ``ttl_seconds``; expiry is checked when an entry is
    read, and all expired entries are swept once the cache grows past
    ``max_entries``. Only used from the event loop, so no locking.
    """

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        max_entries: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[tuple[str, str], CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(
        self, query: str, provider: str, limit: int | None = None
    ) -> list[SearchResult] | None:
        """Return a copy of the cached results, at most ``limit`` of them.

        None on miss, on expiry, or when the entry is too shallow for ``limit``.
        """
        key = (provider, query)
        entry = self._entries.get(key)
        if entry is None:
            return None

        if self._clock() - entry.timestamp > self.ttl_seconds:
            del self._entries[key]
            return None
        if limit is not None and entry.depth is not None and entry.depth < limit:
            return None

        results = entry.results if limit is None else entry.results[:limit]
        logger.debug("search_cache_hit", provider=provider, results=len(results))
        return [r.model_copy(deep=True) for r in results]

    def set(
        self,
        query: str,
        provider: str,
        results: list[SearchResult],
        depth: int | None = None,
    ) -> None:
        self._entries[(provider, query)] = CacheEntry(
            results=[r.model_copy(deep=True) for r in results],
            depth=depth,
            timestamp=self._clock(),
        )
        if len(self._entries) > self.max_entries:
            self.sweep()

    def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items()
            if now - entry.timestamp > self.ttl_seconds
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("search_cache_swept", entries_removed=len(expired))
        return len(expired)

    def clear(self, provider: str | None = None) -> None:
        """Drop every entry, or only those of ``provider``."""
        if provider is None:
            count = len(self._entries)
            self._entries.clear()
        else:
            keys = [key for key in self._entries if key[0] == provider]
            for key in keys:
                del self._entries[key]
            count = len(keys)
        logger.debug("search_cache_cleared", provider=provider, entries_cleared=count)
