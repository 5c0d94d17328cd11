"""Database models for unisearch."""

from unisearch.db.models.drive_file import FOLDER_MIME_TYPE, DriveFile
from unisearch.db.models.enums import IndexStatus
from unisearch.db.models.index_state import INDEX_STATE_ID, IndexState
from unisearch.db.models.stored_credential import StoredCredential

__all__ = [
    # Models
    "DriveFile",
    "IndexState",
    "StoredCredential",
    # Enums
    "IndexStatus",
    # Constants
    "FOLDER_MIME_TYPE",
    "INDEX_STATE_ID",
]
