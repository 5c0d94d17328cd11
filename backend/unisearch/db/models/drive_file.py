"""DriveFile model: denormalized cache of Drive file metadata."""

from __future__ import annotations

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from unisearch.db.base import Base

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"


class DriveFile(Base):
    """One file or folder known to exist in the connected Drive.

    Rows are upserted by the indexer and deleted when Drive reports the
    file trashed, or when a full crawl finishes without seeing them. The table can be dropped and rebuilt from a fresh crawl.
    """

    __tablename__ = "drive_files"

    # Drive-assigned file ID
    id: Mapped[str] = mapped_column(String(128), primary_key=True)

    name: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    mime_type: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # RFC 3339 string as returned by Drive; sorts chronologically
    modified_time: Mapped[str | None] = mapped_column(String(64), nullable=True)

    thumbnail_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    web_view_link: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Crawl that last wrote the row; rows left behind by a finished crawl are stale
    crawl_generation: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False, index=True
    )

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE
