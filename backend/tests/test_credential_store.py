"""Tests for the credential stores."""

from __future__ import annotations

import stat

import pytest
from conftest import MemoryKeyring
from cryptography.fernet import Fernet
from keyring.backends import fail
from keyring.errors import KeyringError
from sqlalchemy import select

from unisearch.core.config import Settings
from unisearch.core.errors import CredentialStoreError
from unisearch.db.models import StoredCredential
from unisearch.services.credential_store import (
    CREDENTIAL_ACCOUNT,
    CREDENTIAL_SERVICE,
    DatabaseCredentialStore,
    KeyringCredentialStore,
    create_credential_store,
    keyring_available,
    load_or_create_key,
)


class BrokenKeyring(MemoryKeyring):
    """Keyring whose every call fails, like a locked keychain."""

    def get_password(self, service, username):
        raise KeyringError("locked")

    def set_password(self, service, username, password):
        raise KeyringError("locked")

    def delete_password(self, service, username):
        raise KeyringError("locked")


@pytest.fixture
def backend() -> MemoryKeyring:
    return MemoryKeyring()


@pytest.fixture
def keyring_store(backend) -> KeyringCredentialStore:
    return KeyringCredentialStore(backend)


@pytest.fixture
def store(session_maker) -> DatabaseCredentialStore:
    return DatabaseCredentialStore(session_maker, Fernet.generate_key())


class TestKeyringCredentialStore:
    """Tests for the OS keyring slot."""

    @pytest.mark.asyncio
    async def test_empty_slot_returns_none(self, keyring_store):
        assert await keyring_store.get() is None

    @pytest.mark.asyncio
    async def test_set_uses_fixed_service_and_account(self, keyring_store, backend):
        await keyring_store.set('{"access_token": "abc"}')

        assert backend.passwords == {
            ("unisearch", "google-oauth"): '{"access_token": "abc"}',
        }
        assert await keyring_store.get() == '{"access_token": "abc"}'

    @pytest.mark.asyncio
    async def test_set_replaces_previous(self, keyring_store, backend):
        await keyring_store.set("first")
        await keyring_store.set("second")

        assert await keyring_store.get() == "second"
        assert len(backend.passwords) == 1

    @pytest.mark.asyncio
    async def test_delete(self, keyring_store):
        """Delete reports whether a value existed."""
        await keyring_store.set("secret")

        assert await keyring_store.delete() is True
        assert await keyring_store.get() is None
        assert await keyring_store.delete() is False

    @pytest.mark.asyncio
    async def test_keyring_errors_wrapped(self):
        store = KeyringCredentialStore(BrokenKeyring())

        with pytest.raises(CredentialStoreError):
            await store.get()
        with pytest.raises(CredentialStoreError):
            await store.set("secret")
        with pytest.raises(CredentialStoreError):
            await store.delete()


class TestDatabaseCredentialStore:
    """Tests for the encrypted database slot."""

    @pytest.mark.asyncio
    async def test_empty_slot_returns_none(self, store):
        assert await store.get() is None

    @pytest.mark.asyncio
    async def test_set_then_get(self, store):
        """A stored secret reads back unchanged."""
        await store.set('{"access_token": "abc"}')
        assert await store.get() == '{"access_token": "abc"}'

    @pytest.mark.asyncio
    async def test_secret_is_encrypted_at_rest(self, store, session_maker):
        """The database row never holds the plaintext."""
        await store.set("plain-secret")

        async with session_maker() as session:
            row = (await session.execute(select(StoredCredential))).scalar_one()

        assert row.service == CREDENTIAL_SERVICE
        assert row.account == CREDENTIAL_ACCOUNT
        assert "plain-secret" not in row.secret

    @pytest.mark.asyncio
    async def test_set_replaces_previous(self, store, session_maker):
        """The slot holds a single value."""
        await store.set("first")
        await store.set("second")

        assert await store.get() == "second"
        async with session_maker() as session:
            rows = (await session.execute(select(StoredCredential))).scalars().all()
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.set("secret")

        assert await store.delete() is True
        assert await store.get() is None
        assert await store.delete() is False

    @pytest.mark.asyncio
    async def test_undecryptable_secret_treated_as_absent(self, store, session_maker):
        """A blob written under another key reads as empty."""
        await store.set("secret")
        other = DatabaseCredentialStore(session_maker, Fernet.generate_key())

        assert await other.get() is None


class TestCreateCredentialStore:
    """Tests for backend selection."""

    def test_auto_prefers_keyring(self, settings, session_maker, backend):
        settings.credential_backend = "auto"

        store = create_credential_store(settings, session_maker, backend)

        assert isinstance(store, KeyringCredentialStore)

    def test_auto_falls_back_without_keyring(self, settings, session_maker):
        """No usable keyring backend means the database slot."""
        settings.credential_backend = "auto"

        store = create_credential_store(settings, session_maker, fail.Keyring())

        assert isinstance(store, DatabaseCredentialStore)

    def test_database_forced(self, settings, session_maker, backend):
        store = create_credential_store(settings, session_maker, backend)
        assert isinstance(store, DatabaseCredentialStore)

    def test_keyring_available(self, backend):
        assert keyring_available(backend)
        assert not keyring_available(fail.Keyring())


class TestLoadOrCreateKey:
    """Tests for encryption key resolution."""

    def test_key_from_settings(self, tmp_path):
        """A configured key is used as-is."""
        key = Fernet.generate_key()
        settings = Settings(_env_file=None, config_path=tmp_path, encryption_key=key.decode())

        assert load_or_create_key(settings) == key
        assert not settings.key_path.exists()

    def test_key_file_created_and_reused(self, tmp_path):
        """Without a configured key, a private key file is created once."""
        settings = Settings(_env_file=None, config_path=tmp_path / "cfg", encryption_key=None)

        first = load_or_create_key(settings)
        second = load_or_create_key(settings)

        assert first == second
        Fernet(first)
        mode = stat.S_IMODE(settings.key_path.stat().st_mode)
        assert mode == 0o600
