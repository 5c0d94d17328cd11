"""Pydantic schemas for search results."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class ResultMetadata(BaseModel):
    """Source-specific details attached to a result."""

    mime_type: str | None = None
    modified_time: str | None = Field(default=None, description="ISO 8601 timestamp")
    thumbnail_link: str | None = None
    web_view_link: str | None = None


class SearchResult(BaseModel):
    """One ranked hit from a search provider."""

    id: str
    name: str
    path: str | None = Field(default=None, description="Absolute path for local results")
    type: Literal["file", "folder"] = "file"
    source: Literal["local", "drive"]
    score: float = Field(ge=0, le=100)
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)

    @property
    def identity_key(self) -> str:
        """Key used to collapse duplicates across providers."""
        if self.source == "local" and self.path:
            return f"local:{self.path}"
        return f"{self.source}:{self.id}"


class SearchResponse(BaseModel):
    """Merged search response."""

    query: str
    results: list[SearchResult]
    total: int


class GroupedSearchResponse(BaseModel):
    """Ranked results split by source."""

    query: str
    local: list[SearchResult] = Field(default_factory=list)
    drive: list[SearchResult] = Field(default_factory=list)


class OpenLocalRequest(BaseModel):
    path: str = Field(..., min_length=1)


class OpenLocalResponse(BaseModel):
    path: str
    is_folder: bool
