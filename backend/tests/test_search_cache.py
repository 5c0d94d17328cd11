"""Tests for the search result cache."""

from __future__ import annotations

import pytest

from unisearch.schemas.search import SearchResult
from unisearch.services.search_cache import SearchCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def result(name: str, score: float = 50.0) -> SearchResult:
    return SearchResult(id=name, name=name, source="drive", score=score)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> SearchCache:
    return SearchCache(ttl_seconds=30, max_entries=3, clock=clock)


class TestSearchCache:
    """Tests for SearchCache."""

    def test_miss(self, cache):
        assert cache.get("report", "drive") is None

    def test_hit_within_ttl(self, cache, clock):
        cache.set("report", "drive", [result("a")])
        clock.now += 29

        cached = cache.get("report", "drive")

        assert [r.name for r in cached] == ["a"]

    def test_keyed_by_provider(self, cache):
        cache.set("report", "drive", [result("a")])
        assert cache.get("report", "local") is None

    def test_expired_entry_removed_on_read(self, cache, clock):
        cache.set("report", "drive", [result("a")])
        clock.now += 31

        assert cache.get("report", "drive") is None
        assert len(cache) == 0

    def test_returns_copies(self, cache):
        """Mutating a returned list or result does not touch the cache."""
        cache.set("report", "drive", [result("a")])

        first = cache.get("report", "drive")
        first[0].name = "changed"
        first.append(result("b"))

        second = cache.get("report", "drive")
        assert [r.name for r in second] == ["a"]

    def test_sweep_when_over_capacity(self, cache, clock):
        """Growing past max_entries drops expired entries."""
        cache.set("q1", "drive", [])
        cache.set("q2", "drive", [])
        clock.now += 60
        cache.set("q3", "drive", [])
        assert len(cache) == 3

        cache.set("q4", "drive", [])

        assert len(cache) == 2
        assert cache.get("q3", "drive") == []

    def test_clear_provider(self, cache):
        cache.set("report", "drive", [result("a")])
        cache.set("report", "local", [result("b")])

        cache.clear("drive")

        assert cache.get("report", "drive") is None
        assert cache.get("report", "local") is not None

    def test_clear_all(self, cache):
        cache.set("report", "drive", [result("a")])
        cache.set("report", "local", [result("b")])

        cache.clear()

        assert len(cache) == 0

    def test_limit_slices_entry(self, cache):
        cache.set("report", "drive", [result("a"), result("b"), result("c")], depth=3)

        assert [r.name for r in cache.get("report", "drive", 2)] == ["a", "b"]
        assert len(cache.get("report", "drive", 3)) == 3

    def test_shallow_entry_misses_larger_limit(self, cache):
        """An entry fetched for limit=1 cannot answer limit=5."""
        cache.set("report", "drive", [result("a")], depth=1)

        assert cache.get("report", "drive", 5) is None
        assert cache.get("report", "drive", 1) is not None

    def test_complete_entry_serves_any_limit(self, cache):
        cache.set("report", "drive", [result("a")], depth=None)
        assert len(cache.get("report", "drive", 50)) == 1
