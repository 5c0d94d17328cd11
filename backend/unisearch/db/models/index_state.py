"""IndexState model: the singleton indexer checkpoint row."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, DateTime, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from unisearch.db.base import Base
from unisearch.db.models.enums import IndexStatus

INDEX_STATE_ID = 1


class IndexState(Base):
    """Checkpoint and status of the Drive indexer.

    Exactly one row (id=1) exists; it is created by schema initialization
    and only ever updated afterwards.
    """

    __tablename__ = "index_state"
    __table_args__ = (CheckConstraint("id = 1", name="ck_index_state_singleton"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=INDEX_STATE_ID)

    # Full-crawl checkpoint; set only while a crawl is running or paused
    last_index_page_token: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # Change-feed cursor for incremental polling
    last_change_page_token: Mapped[str | None] = mapped_column(String(512), nullable=True)

    status: Mapped[IndexStatus] = mapped_column(
        Enum(IndexStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        default=IndexStatus.IDLE,
        nullable=False,
    )
    indexed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Bumped when a crawl starts from the first page
    crawl_generation: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )

    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc), nullable=True
    )
