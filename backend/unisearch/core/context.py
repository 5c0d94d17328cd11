"""Application context: every long-lived component, built once at startup."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from unisearch.core.config import Settings
from unisearch.core.logging import get_logger
from unisearch.db import create_engine, create_session_maker, init_schema
from unisearch.services.credential_store import CredentialStore, create_credential_store
from unisearch.services.drive_api import DriveClient
from unisearch.services.drive_index import DriveIndexRepository
from unisearch.services.drive_search import PROVIDER_NAME as DRIVE_PROVIDER
from unisearch.services.drive_search import DriveSearchProvider
from unisearch.services.events import EventBroadcaster
from unisearch.services.indexer import DriveIndexer
from unisearch.services.local_search import LocalSearchBackend, LocalSearchProvider, default_backend
from unisearch.services.oauth import OAuthSessionManager
from unisearch.services.search import SearchAggregator
from unisearch.services.search_cache import SearchCache

logger = get_logger(__name__)


@dataclass
class AppContext:
    """Owns the engine, HTTP client and services for one process."""

    settings: Settings
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    credential_store: CredentialStore
    oauth: OAuthSessionManager
    drive_client: DriveClient
    repository: DriveIndexRepository
    events: EventBroadcaster
    indexer: DriveIndexer
    cache: SearchCache
    local_provider: LocalSearchProvider
    drive_provider: DriveSearchProvider
    search: SearchAggregator
    fts_available: bool = False

    async def start(self) -> None:
        """Resume the Drive session if a credential is already stored."""
        if await self.oauth.is_authenticated():
            logger.info("drive_session_resuming")
            self.indexer.start_session()

    async def aclose(self) -> None:
        await self.indexer.shutdown()
        await self.http_client.aclose()
        await self.engine.dispose()
        logger.info("app_context_closed")


async def build_context(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    local_backend: LocalSearchBackend | None = None,
    open_browser: Callable[[str], Any] | None = None,
) -> AppContext:
    """Create the database, services and providers for ``settings``."""
    engine = create_engine(settings)
    fts_available = await init_schema(engine)
    session_maker = create_session_maker(engine)

    http_client = httpx.AsyncClient(timeout=settings.http_timeout, transport=transport)

    store = create_credential_store(settings, session_maker)
    oauth_kwargs: dict[str, Any] = {}
    if open_browser is not None:
        oauth_kwargs["open_browser"] = open_browser
    oauth = OAuthSessionManager(settings, store, transport, **oauth_kwargs)

    cache = SearchCache(
        ttl_seconds=settings.cache_ttl_seconds,
        max_entries=settings.cache_max_entries,
    )
    events = EventBroadcaster()
    repository = DriveIndexRepository(session_maker)
    drive_client = DriveClient(settings, http_client)
    indexer = DriveIndexer(
        settings,
        repository,
        drive_client,
        oauth,
        events,
        on_index_changed=lambda: cache.clear(DRIVE_PROVIDER),
    )

    local_provider = LocalSearchProvider(
        settings.search_root,
        backend=local_backend or default_backend(settings.local_search_timeout),
        cache=cache,
    )
    drive_provider = DriveSearchProvider(repository, cache=cache, fts_enabled=fts_available)
    search = SearchAggregator(
        [local_provider, drive_provider],
        provider_timeout=settings.provider_timeout,
    )

    logger.info("app_context_built", fts_available=fts_available)
    return AppContext(
        settings=settings,
        engine=engine,
        session_maker=session_maker,
        http_client=http_client,
        credential_store=store,
        oauth=oauth,
        drive_client=drive_client,
        repository=repository,
        events=events,
        indexer=indexer,
        cache=cache,
        local_provider=local_provider,
        drive_provider=drive_provider,
        search=search,
        fts_available=fts_available,
    )
