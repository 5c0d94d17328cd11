"""Federated search: fan out to providers, merge, dedupe and rank."""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Sequence
from typing import Protocol

from unisearch.core.logging import get_logger
from unisearch.schemas.search import SearchResult

logger = get_logger(__name__)

# Scores closer than this count as a tie
TIE_EPSILON = 0.1
SOURCE_PRIORITY = {"local": 0, "drive": 1}


class SearchProvider(Protocol):
    name: str

    async def search(self, query: str, limit: int = 10) -> list[SearchResult]: ...


def dedupe(results: Sequence[SearchResult]) -> list[SearchResult]:
    """Collapse results sharing an identity key, keeping the higher score."""
    unique: dict[str, SearchResult] = {}
    for result in results:
        key = result.identity_key
        existing = unique.get(key)
        if existing is None or result.score > existing.score:
            unique[key] = result
    return list(unique.values())


def _compare(a: SearchResult, b: SearchResult) -> int:
    if abs(a.score - b.score) < TIE_EPSILON:
        pa = SOURCE_PRIORITY.get(a.source, len(SOURCE_PRIORITY))
        pb = SOURCE_PRIORITY.get(b.source, len(SOURCE_PRIORITY))
        if pa != pb:
            return pa - pb
    if a.score > b.score:
        return -1
    if a.score < b.score:
        return 1
    return 0


def rank(results: Sequence[SearchResult]) -> list[SearchResult]:
    """Dedupe, then order by score with near-ties going to local results."""
    return sorted(dedupe(results), key=functools.cmp_to_key(_compare))


class SearchAggregator:
    """Runs every provider concurrently and merges their results.

    A provider that raises or exceeds ``provider_timeout`` contributes no
    results; the others still answer.
    """

    def __init__(self, providers: Sequence[SearchProvider], provider_timeout: float = 5.0):
        self.providers = list(providers)
        self.provider_timeout = provider_timeout

    async def search(self, query: str, limit: int = 10) -> list[SearchResult]:
        """Ranked results from all providers, at most ``limit`` per provider."""
        if not query.strip():
            return []
        ranked = rank(await self._gather(query, limit))
        return ranked[: limit * len(self.providers)]

    async def search_grouped(self, query: str, limit: int = 10) -> dict[str, list[SearchResult]]:
        """Ranked results split by source, each truncated to ``limit``."""
        groups: dict[str, list[SearchResult]] = {p.name: [] for p in self.providers}
        if not query.strip():
            return groups
        for result in rank(await self._gather(query, limit)):
            bucket = groups.setdefault(result.source, [])
            if len(bucket) < limit:
                bucket.append(result)
        return groups

    async def _gather(self, query: str, limit: int) -> list[SearchResult]:
        batches = await asyncio.gather(
            *(self._run_provider(p, query, limit) for p in self.providers)
        )
        return [result for batch in batches for result in batch]

    async def _run_provider(
        self,
        provider: SearchProvider,
        query: str,
        limit: int,
    ) -> list[SearchResult]:
        try:
            return await asyncio.wait_for(
                provider.search(query, limit),
                timeout=self.provider_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "search_provider_timeout",
                provider=provider.name,
                timeout=self.provider_timeout,
            )
        except Exception as e:
            logger.warning("search_provider_failed", provider=provider.name, error=str(e))
        return []
