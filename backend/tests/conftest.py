"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import httpx
import pytest
from cryptography.fernet import Fernet
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError

from unisearch.core.config import Settings
from unisearch.db import create_engine, create_session_maker, init_schema
from unisearch.services.drive_index import DriveIndexRepository
from unisearch.services.events import EventBroadcaster

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


class StaticBackend:
    """Local search backend returning a fixed list of paths."""

    def __init__(self, paths: list[str] | None = None):
        self.paths = paths or []
        self.calls: list[tuple[str, Path, int]] = []

    async def find(self, query: str, root: Path, limit: int) -> list[str]:
        self.calls.append((query, root, limit))
        return list(self.paths)


class MemoryKeyring(KeyringBackend):
    """Keyring backend holding passwords in a dict."""

    priority = 1

    def __init__(self):
        super().__init__()
        self.passwords: dict[tuple[str, str], str] = {}

    def get_password(self, service, username):
        return self.passwords.get((service, username))

    def set_password(self, service, username, password):
        self.passwords[(service, username)] = password

    def delete_password(self, service, username):
        if self.passwords.pop((service, username), None) is None:
            raise PasswordDeleteError("not found")


def make_http_client(handler: Callable) -> httpx.AsyncClient:
    """httpx client whose requests are answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated to a temp directory with fast retries."""
    return Settings(
        _env_file=None,
        config_path=tmp_path / "config",
        database_url=TEST_DB_URL,
        google_client_id="test-client-id",
        google_client_secret="test-client-secret",
        credential_backend="database",
        encryption_key=Fernet.generate_key().decode(),
        search_root=tmp_path / "home",
        backoff_base_delay=0.0,
        backoff_max_delay=0.0,
        retry_fixed_delay=0.0,
        page_delay=0.0,
    )


@pytest.fixture
async def db_engine():
    """Create an in-memory test database with the full schema."""
    engine = create_engine(url=TEST_DB_URL)
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def fts_available(db_engine) -> bool:
    """Whether this SQLite build has FTS5 (schema init is idempotent)."""
    return await init_schema(db_engine)


@pytest.fixture
def session_maker(db_engine):
    return create_session_maker(db_engine)


@pytest.fixture
def repository(session_maker) -> DriveIndexRepository:
    return DriveIndexRepository(session_maker)


@pytest.fixture
def events() -> EventBroadcaster:
    return EventBroadcaster()
