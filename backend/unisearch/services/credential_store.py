"""Secret slot for the OAuth credential, keyed by a fixed (service, account) pair.

The OS keyring (Keychain, Credential Manager, Secret Service) is used when it
has a working backend. Machines without one fall back to a Fernet-encrypted
row in the index database.
"""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timezone
from typing import Protocol

import keyring
from cryptography.fernet import Fernet, InvalidToken
from keyring.backend import KeyringBackend
from keyring.backends import fail, null
from keyring.errors import KeyringError, PasswordDeleteError
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from unisearch.core.config import Settings
from unisearch.core.errors import CredentialStoreError
from unisearch.core.logging import get_logger
from unisearch.db.models import StoredCredential

logger = get_logger(__name__)

CREDENTIAL_SERVICE = "unisearch"
CREDENTIAL_ACCOUNT = "google-oauth"


class CredentialStore(Protocol):
    async def get(self) -> str | None: ...

    async def set(self, secret: str) -> None: ...

    async def delete(self) -> bool: ...


# ========== OS keyring ==========


def keyring_available(backend: KeyringBackend | None = None) -> bool:
    """False when keyring resolved to its failing or null backend."""
    backend = backend or keyring.get_keyring()
    return not isinstance(backend, (fail.Keyring, null.Keyring))


class KeyringCredentialStore:
    """Credential slot in the OS keyring.

    keyring is blocking (D-Bus, Security framework), so every call runs in a
    worker thread.
    """

    def __init__(
        self,
        backend: KeyringBackend | None = None,
        service: str = CREDENTIAL_SERVICE,
        account: str = CREDENTIAL_ACCOUNT,
    ):
        self._keyring = backend or keyring.get_keyring()
        self.service = service
        self.account = account

    async def get(self) -> str | None:
        try:
            return await asyncio.to_thread(self._keyring.get_password, self.service, self.account)
        except KeyringError as e:
            raise CredentialStoreError(f"Failed to read credential from keyring: {e}") from e

    async def set(self, secret: str) -> None:
        try:
            await asyncio.to_thread(
                self._keyring.set_password, self.service, self.account, secret
            )
        except KeyringError as e:
            raise CredentialStoreError(f"Failed to write credential to keyring: {e}") from e
        logger.debug("credential_stored", backend="keyring", service=self.service)

    async def delete(self) -> bool:
        """Remove the secret. Returns True if one existed."""
        try:
            await asyncio.to_thread(self._keyring.delete_password, self.service, self.account)
        except PasswordDeleteError:
            return False
        except KeyringError as e:
            raise CredentialStoreError(f"Failed to delete credential from keyring: {e}") from e
        logger.info("credential_deleted", backend="keyring", service=self.service)
        return True


# ========== Database fallback ==========


def load_or_create_key(settings: Settings) -> bytes:
    """Return the Fernet key from settings, or from the key file.

    The key file is created with mode 0600 on first use.
    """
    if settings.encryption_key:
        # Fernet expects the key as base64-encoded bytes (not decoded)
        return settings.encryption_key.encode()

    key_path = settings.key_path
    if key_path.exists():
        return key_path.read_bytes().strip()

    key_path.parent.mkdir(parents=True, exist_ok=True)
    key = Fernet.generate_key()
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(key)
    logger.info("encryption_key_created", path=str(key_path))
    return key


class DatabaseCredentialStore:
    """Fernet-encrypted credential row in ``stored_credentials``."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        key: bytes,
        service: str = CREDENTIAL_SERVICE,
        account: str = CREDENTIAL_ACCOUNT,
    ):
        self._session_maker = session_maker
        self._fernet = Fernet(key)
        self.service = service
        self.account = account

    async def get(self) -> str | None:
        """Return the decrypted secret, or None if the slot is empty."""
        try:
            async with self._session_maker() as session:
                row = await session.get(StoredCredential, (self.service, self.account))
        except SQLAlchemyError as e:
            raise CredentialStoreError(f"Failed to read credential: {e}") from e

        if row is None:
            return None

        try:
            return self._fernet.decrypt(row.secret.encode()).decode()
        except InvalidToken:
            # Written with a different key
            logger.warning(
                "credential_undecryptable",
                service=self.service,
                account=self.account,
            )
            return None

    async def set(self, secret: str) -> None:
        """Encrypt and store ``secret``, replacing any previous value."""
        encrypted = self._fernet.encrypt(secret.encode()).decode()
        try:
            async with self._session_maker() as session:
                row = await session.get(StoredCredential, (self.service, self.account))
                if row is None:
                    session.add(
                        StoredCredential(
                            service=self.service,
                            account=self.account,
                            secret=encrypted,
                        )
                    )
                else:
                    row.secret = encrypted
                    row.updated_at = datetime.now(timezone.utc)
                await session.commit()
        except SQLAlchemyError as e:
            raise CredentialStoreError(f"Failed to write credential: {e}") from e

        logger.debug("credential_stored", backend="database", service=self.service)

    async def delete(self) -> bool:
        """Remove the secret. Returns True if one existed."""
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    delete(StoredCredential).where(
                        StoredCredential.service == self.service,
                        StoredCredential.account == self.account,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise CredentialStoreError(f"Failed to delete credential: {e}") from e

        removed = bool(result.rowcount)
        if removed:
            logger.info("credential_deleted", backend="database", service=self.service)
        return removed


def create_credential_store(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    backend: KeyringBackend | None = None,
) -> CredentialStore:
    """Pick the credential store for ``settings.credential_backend``.

    ``auto`` uses the OS keyring unless keyring found no working backend.
    """
    choice = settings.credential_backend
    if choice == "auto":
        backend = backend or keyring.get_keyring()
        if keyring_available(backend):
            choice = "keyring"
        else:
            logger.warning("keyring_unavailable", fallback="database")
            choice = "database"

    if choice == "keyring":
        store: CredentialStore = KeyringCredentialStore(backend)
    else:
        store = DatabaseCredentialStore(session_maker, load_or_create_key(settings))
    logger.info("credential_store_selected", backend=choice)
    return store
