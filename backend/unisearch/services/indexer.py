"""Drive indexer: resumable full crawl plus incremental change polling.

The full crawl pages through ``files.list`` and checkpoints the next page
token after every stored page, so a stop, crash or error resumes where it
left off. A crawl started from the first page also drops, on completion,
every row it did not see. Once the crawl completes, a background task
polls the change feed for the rest of the session.
"""

from __future__ import annotations

import asyncio
import random
from contextlib import suppress
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable, Protocol, TypeVar

from unisearch.core.config import Settings
from unisearch.core.errors import (
    DriveApiError,
    DriveAuthError,
    DriveRateLimitError,
    DriveResponseError,
    NotAuthenticatedError,
    UnisearchError,
)
from unisearch.core.logging import get_logger
from unisearch.db.models import IndexState, IndexStatus
from unisearch.services.drive_api import DriveClient
from unisearch.services.drive_index import DriveIndexRepository
from unisearch.services.events import EventBroadcaster, IndexerEventType

logger = get_logger(__name__)

T = TypeVar("T")

BACKOFF_JITTER = 0.3  # +/-30%


class TokenProvider(Protocol):
    async def get_access_token(self) -> str | None: ...

    async def force_refresh(self) -> str | None: ...


@dataclass
class SyncResult:
    """Outcome of one change-feed poll."""

    changes: int
    upserted: int
    deleted: int
    new_token: str


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float = BACKOFF_JITTER,
) -> float:
    """Capped exponential delay with jitter for retry ``attempt`` (1-based)."""
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    delay += delay * jitter * (2 * random.random() - 1)
    return max(delay, 0.0)


class DriveIndexer:
    """Keeps the local Drive index in step with the account.

    One instance per application context. Status transitions are persisted
    in the ``index_state`` row and announced on the event broadcaster.
    """

    def __init__(
        self,
        settings: Settings,
        repository: DriveIndexRepository,
        drive: DriveClient,
        auth: TokenProvider,
        events: EventBroadcaster,
        on_index_changed: Callable[[], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self._repo = repository
        self._drive = drive
        self._auth = auth
        self._events = events
        self._on_index_changed = on_index_changed
        self._sleep = sleep

        self._crawling = False
        self._stop_requested = False
        self._poll_task: asyncio.Task | None = None
        self._session_task: asyncio.Task | None = None

    @property
    def is_crawling(self) -> bool:
        return self._crawling

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def get_state(self) -> IndexState:
        return await self._repo.get_state()

    # ========== Full crawl ==========

    async def start_indexing(self) -> IndexState:
        """Run the full crawl, resuming from the stored checkpoint if any.

        Returns the final index state. Failures end in the ``error`` status
        and an ``error`` event; nothing is raised.
        """
        if self._crawling:
            logger.info("crawl_already_running")
            return await self._repo.get_state()

        self._crawling = True
        self._stop_requested = False
        try:
            state = await self._repo.get_state()
            if state.status in (IndexStatus.COMPLETED, IndexStatus.ERROR):
                await self._set_status(IndexStatus.IDLE)
            await self._set_status(IndexStatus.INDEXING)

            access_token = await self._auth.get_access_token()
            if access_token is None:
                raise NotAuthenticatedError("Not signed in to Google Drive")

            await self._crawl(state, access_token)
        except asyncio.CancelledError:
            await self._repo.update_state(status=IndexStatus.PAUSED)
            logger.info("crawl_cancelled")
            raise
        except UnisearchError as e:
            await self._fail(e)
        except Exception as e:
            logger.exception("crawl_unexpected_error")
            await self._fail(e)
        finally:
            self._crawling = False

        return await self._repo.get_state()

    def stop(self) -> bool:
        """Ask the running crawl to pause before its next page request."""
        if not self._crawling:
            return False
        self._stop_requested = True
        logger.info("crawl_stop_requested")
        return True

    async def _crawl(self, state: IndexState, access_token: str) -> None:
        page_token = state.last_index_page_token
        indexed = state.indexed_count if page_token else 0
        page_count = 0

        if page_token is None:
            await self._repo.begin_crawl_generation()

        logger.info(
            "crawl_started",
            resumed=page_token is not None,
            indexed=indexed,
        )

        while True:
            if self._stop_requested:
                await self._repo.update_state(status=IndexStatus.PAUSED)
                self._events.emit(
                    IndexerEventType.PAUSED,
                    indexed=indexed,
                    last_page_token=page_token,
                )
                self._events.emit(IndexerEventType.STATE_CHANGED, status=IndexStatus.PAUSED.value)
                logger.info("crawl_paused", indexed=indexed, page_count=page_count)
                return

            page, access_token = await self._call_with_retry(
                "files.list",
                partial(self._drive.list_files, page_token=page_token),
                access_token,
            )

            indexed += len(page.files)
            page_count += 1
            await self._repo.apply_crawl_page(page.files, page.next_page_token, indexed)
            self._index_changed()

            self._events.emit(
                IndexerEventType.PROGRESS,
                indexed=indexed,
                last_page_token=page.next_page_token,
                page_count=page_count,
            )
            logger.debug("crawl_page_indexed", page=page_count, files=len(page.files), indexed=indexed)

            if not page.next_page_token:
                break

            page_token = page.next_page_token
            if self.settings.page_delay:
                await self._sleep(self.settings.page_delay)

        change_token, access_token = await self._call_with_retry(
            "changes.getStartPageToken",
            self._drive.get_start_page_token,
            access_token,
        )
        removed = await self._repo.delete_stale_files()
        if removed:
            self._index_changed()
        await self._repo.update_state(
            status=IndexStatus.COMPLETED,
            last_index_page_token=None,
            last_change_page_token=change_token,
        )
        self._events.emit(
            IndexerEventType.COMPLETED,
            indexed=indexed,
            page_count=page_count,
            removed=removed,
        )
        self._events.emit(IndexerEventType.STATE_CHANGED, status=IndexStatus.COMPLETED.value)
        logger.info("crawl_completed", indexed=indexed, page_count=page_count, removed=removed)

    async def _call_with_retry(
        self,
        operation: str,
        call: Callable[[str], Awaitable[T]],
        access_token: str,
    ) -> tuple[T, str]:
        """Run ``call`` with the shared per-request attempt budget.

        401 refreshes the token, 429/5xx/transport errors back off
        exponentially, other HTTP errors wait a short fixed delay.

        Returns:
            The call result and the (possibly refreshed) access token.
        """
        max_attempts = self.settings.crawl_max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                return await call(access_token), access_token
            except DriveAuthError as e:
                if attempt >= max_attempts:
                    raise
                refreshed = await self._auth.force_refresh()
                if refreshed is None:
                    raise NotAuthenticatedError("Drive rejected the credential") from e
                access_token = refreshed
                logger.warning("drive_token_rejected", operation=operation, attempt=attempt)
                continue
            except DriveResponseError:
                raise
            except DriveApiError as e:
                if attempt >= max_attempts:
                    logger.error(
                        "drive_retries_exhausted",
                        operation=operation,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise
                if e.is_transient:
                    delay = backoff_delay(
                        attempt,
                        self.settings.backoff_base_delay,
                        self.settings.backoff_max_delay,
                    )
                    if isinstance(e, DriveRateLimitError) and e.retry_after:
                        delay = max(delay, e.retry_after)
                else:
                    delay = self.settings.retry_fixed_delay
                logger.warning(
                    "drive_request_retry",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    status=e.status,
                    delay_seconds=round(delay, 2),
                )
                await self._sleep(delay)

    async def _set_status(self, status: IndexStatus) -> None:
        await self._repo.update_state(status=status)
        self._events.emit(IndexerEventType.STATE_CHANGED, status=status.value)

    async def _fail(self, error: Exception) -> None:
        reason = "not_authenticated" if isinstance(error, NotAuthenticatedError) else "crawl_failed"
        logger.error("crawl_failed", reason=reason, error=str(error))
        try:
            await self._repo.update_state(status=IndexStatus.ERROR)
        except Exception:
            logger.exception("crawl_state_persist_failed")
        self._events.emit(
            IndexerEventType.ERROR,
            phase="crawl",
            reason=reason,
            message=str(error),
        )
        self._events.emit(IndexerEventType.STATE_CHANGED, status=IndexStatus.ERROR.value)

    # ========== Incremental sync ==========

    async def poll_incremental_changes(self) -> SyncResult:
        """Apply every pending change-feed entry once.

        The stored cursor only advances after all pages were applied.

        Raises:
            NotAuthenticatedError: No usable credential.
            DriveApiError: The change feed could not be read.
        """
        access_token = await self._auth.get_access_token()
        if access_token is None:
            raise NotAuthenticatedError("Not signed in to Google Drive")

        state = await self._repo.get_state()
        cursor = state.last_change_page_token
        if cursor is None:
            cursor, access_token = await self._call_with_retry(
                "changes.getStartPageToken",
                self._drive.get_start_page_token,
                access_token,
            )
            await self._repo.update_state(last_change_page_token=cursor)
            logger.info("change_cursor_acquired")
            result = SyncResult(changes=0, upserted=0, deleted=0, new_token=cursor)
            self._events.emit(IndexerEventType.INCREMENTAL_SYNC, changes=0, new_token=cursor)
            return result

        page_token = cursor
        new_cursor = cursor
        changes = upserted = deleted = 0
        while True:
            page, access_token = await self._call_with_retry(
                "changes.list",
                partial(self._drive.list_changes, page_token=page_token),
                access_token,
            )
            page_upserted, page_deleted = await self._repo.apply_changes(page.changes)
            changes += len(page.changes)
            upserted += page_upserted
            deleted += page_deleted

            if page.new_start_page_token:
                new_cursor = page.new_start_page_token
                break
            if not page.next_page_token:
                break
            page_token = new_cursor = page.next_page_token

        await self._repo.update_state(last_change_page_token=new_cursor)
        if upserted or deleted:
            self._index_changed()

        self._events.emit(IndexerEventType.INCREMENTAL_SYNC, changes=changes, new_token=new_cursor)
        logger.info(
            "incremental_sync_applied",
            changes=changes,
            upserted=upserted,
            deleted=deleted,
        )
        return SyncResult(changes=changes, upserted=upserted, deleted=deleted, new_token=new_cursor)

    async def run_incremental_loop(self, interval: float | None = None) -> None:
        """Poll the change feed until cancelled."""
        interval = interval or self.settings.poll_interval
        logger.info("poll_loop_started", interval=interval)
        try:
            while True:
                try:
                    await self.poll_incremental_changes()
                except Exception as e:
                    logger.error("poll_iteration_failed", error=str(e))
                    self._events.emit(
                        IndexerEventType.ERROR,
                        phase="incremental",
                        message=str(e),
                    )
                await self._sleep(interval)
        finally:
            logger.info("poll_loop_stopped")

    def start_polling(self, interval: float | None = None) -> asyncio.Task:
        if self.is_polling:
            return self._poll_task
        self._poll_task = asyncio.create_task(self.run_incremental_loop(interval))
        return self._poll_task

    async def stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    # ========== Session ==========

    async def run_session(self, force_crawl: bool = False) -> IndexState:
        """Crawl (unless already complete) and then keep polling."""
        state = await self._repo.get_state()
        already_synced = (
            state.status == IndexStatus.COMPLETED and state.last_change_page_token is not None
        )
        if force_crawl or not already_synced:
            state = await self.start_indexing()

        if state.status == IndexStatus.COMPLETED:
            self.start_polling()
        return state

    def start_session(self, force_crawl: bool = False) -> asyncio.Task:
        """Run :meth:`run_session` in the background."""
        if self._session_task is not None and not self._session_task.done():
            return self._session_task
        self._session_task = asyncio.create_task(self.run_session(force_crawl))
        return self._session_task

    async def shutdown(self) -> None:
        """Cancel background work; a running crawl is left paused."""
        await self.stop_polling()
        task, self._session_task = self._session_task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def reset(self) -> IndexState:
        """Stop everything, drop the indexed files and return to idle."""
        await self.shutdown()
        await self._repo.clear_files()
        state = await self._repo.reset_state()
        self._index_changed()
        self._events.emit(IndexerEventType.STATE_CHANGED, status=IndexStatus.IDLE.value)
        logger.info("drive_index_reset")
        return state

    def _index_changed(self) -> None:
        if self._on_index_changed is not None:
            self._on_index_changed()
