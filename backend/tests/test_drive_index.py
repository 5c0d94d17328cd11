"""Tests for the Drive index repository."""

from __future__ import annotations

import pytest

from unisearch.db.models import IndexStatus
from unisearch.services.drive_api import DriveChange, DriveFileInfo
from unisearch.services.drive_index import build_fts_query, escape_like


def file_info(file_id: str, name: str, modified: str = "2024-01-01T00:00:00.000Z", **extra):
    return DriveFileInfo(id=file_id, name=name, modified_time=modified, **extra)


class TestHelpers:
    """Tests for query building helpers."""

    def test_build_fts_query(self):
        """Each word becomes a quoted prefix term."""
        assert build_fts_query("quarterly rep") == '"quarterly"* "rep"*'

    def test_build_fts_query_strips_syntax(self):
        """FTS operators and quotes in user input are dropped."""
        assert build_fts_query('budget" OR *') == '"budget"* "OR"*'
        assert build_fts_query("  --  ") is None

    def test_escape_like(self):
        assert escape_like("50%_off\\") == "50\\%\\_off\\\\"


class TestFiles:
    """Tests for file writes."""

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, repository):
        """Upserting the same id twice keeps one row with the latest values."""
        await repository.upsert_files([file_info("f1", "Draft.docx")])
        await repository.upsert_files([file_info("f1", "Final.docx", mime_type="text/plain")])

        assert await repository.count_files() == 1
        row = await repository.get_file("f1")
        assert row.name == "Final.docx"
        assert row.mime_type == "text/plain"

    @pytest.mark.asyncio
    async def test_upsert_large_batch(self, repository):
        """Batches beyond one INSERT chunk are written in full."""
        files = [file_info(f"id-{i}", f"file {i}.txt") for i in range(1203)]

        assert await repository.upsert_files(files) == 1203
        assert await repository.count_files() == 1203

    @pytest.mark.asyncio
    async def test_delete_files(self, repository):
        await repository.upsert_files([file_info("a", "a.txt"), file_info("b", "b.txt")])

        assert await repository.delete_files(["a", "missing"]) == 1
        assert await repository.delete_files([]) == 0
        assert await repository.get_file("a") is None
        assert await repository.get_file("b") is not None

    @pytest.mark.asyncio
    async def test_folder_flag(self, repository):
        await repository.upsert_files(
            [file_info("d", "Projects", mime_type="application/vnd.google-apps.folder")]
        )

        row = await repository.get_file("d")
        assert row.is_folder

    @pytest.mark.asyncio
    async def test_apply_changes(self, repository):
        """Trashed and removed entries delete; others upsert."""
        await repository.upsert_files(
            [file_info("keep", "old.txt"), file_info("trash", "t.txt"), file_info("gone", "g.txt")]
        )

        upserted, deleted = await repository.apply_changes(
            [
                DriveChange(file_id="keep", file=file_info("keep", "new.txt")),
                DriveChange(file_id="trash", file=file_info("trash", "t.txt", trashed=True)),
                DriveChange(file_id="gone", removed=True),
                DriveChange(file_id="added", file=file_info("added", "added.txt")),
                DriveChange(),
            ]
        )

        assert (upserted, deleted) == (2, 2)
        assert (await repository.get_file("keep")).name == "new.txt"
        assert await repository.get_file("added") is not None
        assert await repository.get_file("trash") is None
        assert await repository.get_file("gone") is None

    @pytest.mark.asyncio
    async def test_apply_changes_last_entry_wins(self, repository):
        """A later removal overrides an earlier upsert of the same file."""
        upserted, deleted = await repository.apply_changes(
            [
                DriveChange(file_id="x", file=file_info("x", "x.txt")),
                DriveChange(file_id="x", removed=True),
            ]
        )

        assert (upserted, deleted) == (0, 1)
        assert await repository.get_file("x") is None

    @pytest.mark.asyncio
    async def test_clear_files(self, repository):
        await repository.upsert_files([file_info("a", "a.txt")])
        await repository.clear_files()
        assert await repository.count_files() == 0

    @pytest.mark.asyncio
    async def test_stale_generation_removed(self, repository):
        """Only rows written since the last generation bump survive."""
        await repository.upsert_files([file_info("old", "old.txt"), file_info("seen", "s.txt")])

        assert await repository.begin_crawl_generation() == 1
        await repository.apply_crawl_page([file_info("seen", "s.txt")], None, 1)
        await repository.apply_changes([DriveChange(file_id="new", file=file_info("new", "n.txt"))])

        assert await repository.delete_stale_files() == 1
        assert await repository.get_file("old") is None
        assert (await repository.get_file("seen")).crawl_generation == 1
        assert await repository.get_file("new") is not None
        assert (await repository.get_state()).crawl_generation == 1

    @pytest.mark.asyncio
    async def test_nothing_stale_without_new_generation(self, repository):
        await repository.upsert_files([file_info("a", "a.txt")])
        assert await repository.delete_stale_files() == 0
        assert await repository.count_files() == 1


class TestIndexState:
    """Tests for the checkpoint row."""

    @pytest.mark.asyncio
    async def test_initial_state(self, repository):
        state = await repository.get_state()

        assert state.status == IndexStatus.IDLE
        assert state.indexed_count == 0
        assert state.last_index_page_token is None
        assert state.last_change_page_token is None

    @pytest.mark.asyncio
    async def test_partial_update_keeps_other_fields(self, repository):
        """Only the passed fields change."""
        await repository.update_state(last_change_page_token="c1", indexed_count=7)
        state = await repository.update_state(status=IndexStatus.COMPLETED)

        assert state.status == IndexStatus.COMPLETED
        assert state.last_change_page_token == "c1"
        assert state.indexed_count == 7

    @pytest.mark.asyncio
    async def test_none_clears_token(self, repository):
        await repository.update_state(last_index_page_token="p3")
        state = await repository.update_state(last_index_page_token=None)
        assert state.last_index_page_token is None

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, repository):
        with pytest.raises(ValueError):
            await repository.update_state(bogus=1)

    @pytest.mark.asyncio
    async def test_apply_crawl_page_advances_checkpoint(self, repository):
        """Files and checkpoint are written together."""
        state = await repository.apply_crawl_page(
            [file_info("a", "a.txt"), file_info("b", "b.txt")],
            next_page_token="p2",
            indexed_count=2,
        )

        assert state.last_index_page_token == "p2"
        assert state.indexed_count == 2
        assert await repository.count_files() == 2

    @pytest.mark.asyncio
    async def test_reset_state(self, repository):
        await repository.update_state(
            last_index_page_token="p",
            last_change_page_token="c",
            status=IndexStatus.ERROR,
            indexed_count=9,
        )

        state = await repository.reset_state()

        assert state.status == IndexStatus.IDLE
        assert state.indexed_count == 0
        assert state.last_index_page_token is None
        assert state.last_change_page_token is None


class TestNameSearch:
    """Tests for LIKE and FTS name search."""

    @pytest.mark.asyncio
    async def test_like_orders_prefix_suffix_then_anywhere(self, repository):
        await repository.upsert_files(
            [
                file_info("any", "my report notes", "2024-03-01T00:00:00Z"),
                file_info("suffix", "annual report", "2024-01-01T00:00:00Z"),
                file_info("prefix", "report 2023", "2023-01-01T00:00:00Z"),
                file_info("other", "budget", "2024-05-01T00:00:00Z"),
            ]
        )

        rows = await repository.search_like("report", 10)

        assert [r.id for r in rows] == ["prefix", "suffix", "any"]

    @pytest.mark.asyncio
    async def test_like_newest_first_within_tier(self, repository):
        await repository.upsert_files(
            [
                file_info("old", "plan a", "2023-01-01T00:00:00Z"),
                file_info("new", "plan b", "2024-01-01T00:00:00Z"),
            ]
        )

        rows = await repository.search_like("plan", 10)

        assert [r.id for r in rows] == ["new", "old"]

    @pytest.mark.asyncio
    async def test_like_is_case_insensitive_and_escapes_wildcards(self, repository):
        await repository.upsert_files(
            [file_info("pct", "50% Off Flyer"), file_info("plain", "500 Offers")]
        )

        assert [r.id for r in await repository.search_like("50%", 10)] == ["pct"]
        rows = await repository.search_like("OFF", 10)
        assert {r.id for r in rows} == {"pct", "plain"}

    @pytest.mark.asyncio
    async def test_like_limit(self, repository):
        await repository.upsert_files([file_info(str(i), f"note {i}") for i in range(5)])
        assert len(await repository.search_like("note", 3)) == 3

    @pytest.mark.asyncio
    async def test_fts_prefix_match(self, repository, fts_available):
        """FTS matches word prefixes and follows renames and deletes."""
        if not fts_available:
            pytest.skip("SQLite built without FTS5")

        await repository.upsert_files(
            [file_info("a", "Quarterly Report.pdf"), file_info("b", "Holiday photos")]
        )

        assert [r.id for r in await repository.search_fts("quart", 10)] == ["a"]
        assert [r.id for r in await repository.search_fts("holiday pho", 10)] == ["b"]

        await repository.upsert_files([file_info("a", "Annual summary.pdf")])
        assert await repository.search_fts("quart", 10) == []
        assert [r.id for r in await repository.search_fts("annual", 10)] == ["a"]

        await repository.delete_files(["b"])
        assert await repository.search_fts("holiday", 10) == []

    @pytest.mark.asyncio
    async def test_fts_without_tokens(self, repository):
        assert await repository.search_fts("!!", 10) == []
