"""Thin async client for the Google Drive v3 REST API.

Only the three read-only endpoints the indexer needs are wrapped:
``files.list``, ``changes.getStartPageToken`` and ``changes.list``.
Callers pass the access token explicitly so token refresh stays in the
OAuth session manager.
"""

from __future__ import annotations

from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from unisearch.core.config import Settings
from unisearch.core.errors import (
    DriveApiError,
    DriveAuthError,
    DriveRateLimitError,
    DriveResponseError,
)
from unisearch.core.logging import get_logger

logger = get_logger(__name__)

FILE_FIELDS = "id,name,mimeType,modifiedTime,thumbnailLink,webViewLink"
LIST_FIELDS = f"nextPageToken,files({FILE_FIELDS})"
CHANGE_FIELDS = (
    f"nextPageToken,newStartPageToken,changes(fileId,removed,file({FILE_FIELDS},trashed))"
)

# 403 reasons Google uses for quota exhaustion instead of 429
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


class DriveFileInfo(BaseModel):
    """File metadata as returned by the Drive API."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    mime_type: str | None = Field(default=None, alias="mimeType")
    modified_time: str | None = Field(default=None, alias="modifiedTime")
    thumbnail_link: str | None = Field(default=None, alias="thumbnailLink")
    web_view_link: str | None = Field(default=None, alias="webViewLink")
    trashed: bool = False


class FileListPage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    files: list[DriveFileInfo] = Field(default_factory=list)
    next_page_token: str | None = Field(default=None, alias="nextPageToken")


class DriveChange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_id: str | None = Field(default=None, alias="fileId")
    removed: bool = False
    file: DriveFileInfo | None = None

    @property
    def is_deletion(self) -> bool:
        return self.removed or (self.file is not None and self.file.trashed)


class ChangeListPage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    changes: list[DriveChange] = Field(default_factory=list)
    next_page_token: str | None = Field(default=None, alias="nextPageToken")
    new_start_page_token: str | None = Field(default=None, alias="newStartPageToken")


class DriveClient:
    """Drive v3 calls over a shared httpx client."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self.settings = settings
        self._http = http_client
        self._base = settings.drive_api_base.rstrip("/")

    async def list_files(
        self,
        access_token: str,
        page_token: str | None = None,
        page_size: int | None = None,
    ) -> FileListPage:
        """List one page of non-trashed files."""
        params: dict[str, Any] = {
            "pageSize": page_size or self.settings.index_page_size,
            "fields": LIST_FIELDS,
            "q": "trashed=false",
        }
        if page_token:
            params["pageToken"] = page_token

        data = await self._get("/files", access_token, params)
        return self._parse(FileListPage, data, "files.list")

    async def get_start_page_token(self, access_token: str) -> str:
        """Get the change-feed cursor representing "now"."""
        data = await self._get("/changes/startPageToken", access_token, {})
        token = data.get("startPageToken")
        if not token:
            raise DriveResponseError("changes.getStartPageToken returned no token")
        return token

    async def list_changes(self, access_token: str, page_token: str) -> ChangeListPage:
        """List one page of changes since ``page_token``."""
        params = {
            "pageToken": page_token,
            "pageSize": self.settings.index_page_size,
            "fields": CHANGE_FIELDS,
        }
        data = await self._get("/changes", access_token, params)
        return self._parse(ChangeListPage, data, "changes.list")

    async def _get(self, path: str, access_token: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._http.get(
                f"{self._base}{path}",
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.settings.http_timeout,
            )
        except httpx.HTTPError as e:
            raise DriveApiError(f"Drive request to {path} failed: {e}") from e

        if response.status_code >= 400:
            raise self._error_for(path, response)

        try:
            data = response.json()
        except ValueError as e:
            raise DriveResponseError(f"Drive returned invalid JSON for {path}") from e
        if not isinstance(data, dict):
            raise DriveResponseError(f"Drive returned unexpected body for {path}")
        return data

    @staticmethod
    def _error_for(path: str, response: httpx.Response) -> DriveApiError:
        status = response.status_code
        message = f"Drive API {path} returned HTTP {status}"

        if status == 401:
            return DriveAuthError(message, status=status)

        if status == 429 or (status == 403 and _error_reason(response) in RATE_LIMIT_REASONS):
            retry_after = None
            header = response.headers.get("Retry-After")
            if header:
                try:
                    retry_after = float(header)
                except ValueError:
                    retry_after = None
            return DriveRateLimitError(message, retry_after=retry_after)

        return DriveApiError(message, status=status)

    @staticmethod
    def _parse(model: type[BaseModel], data: dict[str, Any], operation: str):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise DriveResponseError(f"Malformed {operation} response: {e}") from e


def _error_reason(response: httpx.Response) -> str | None:
    try:
        errors = response.json()["error"]["errors"]
        return errors[0].get("reason")
    except (ValueError, KeyError, IndexError, TypeError, AttributeError):
        return None
