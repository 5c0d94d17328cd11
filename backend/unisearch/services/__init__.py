"""Business logic services for unisearch."""

from unisearch.services.credential_store import (
    CredentialStore,
    DatabaseCredentialStore,
    KeyringCredentialStore,
    create_credential_store,
)
from unisearch.services.drive_api import DriveClient
from unisearch.services.drive_index import DriveIndexRepository
from unisearch.services.drive_search import DriveSearchProvider
from unisearch.services.events import EventBroadcaster, IndexerEvent, IndexerEventType
from unisearch.services.indexer import DriveIndexer
from unisearch.services.local_search import LocalSearchProvider
from unisearch.services.oauth import OAuthSessionManager, SessionState, TokenSet
from unisearch.services.search import SearchAggregator
from unisearch.services.search_cache import SearchCache

__all__ = [
    "CredentialStore",
    "DatabaseCredentialStore",
    "DriveClient",
    "DriveIndexRepository",
    "DriveIndexer",
    "DriveSearchProvider",
    "EventBroadcaster",
    "IndexerEvent",
    "IndexerEventType",
    "KeyringCredentialStore",
    "LocalSearchProvider",
    "OAuthSessionManager",
    "SearchAggregator",
    "SearchCache",
    "SessionState",
    "TokenSet",
    "create_credential_store",
]
