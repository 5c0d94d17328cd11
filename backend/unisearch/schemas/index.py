"""Pydantic schemas for the Drive indexer API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from unisearch.db.models import IndexStatus


class IndexStateResponse(BaseModel):
    """Current indexer checkpoint and status."""

    model_config = ConfigDict(from_attributes=True)

    status: IndexStatus
    indexed_count: int
    last_index_page_token: str | None = None
    last_change_page_token: str | None = None
    updated_at: datetime | None = None
    is_crawling: bool = False
    is_polling: bool = False


class IndexActionResponse(BaseModel):
    """Result of a start/stop/reset request."""

    accepted: bool
    message: str
    state: IndexStateResponse
