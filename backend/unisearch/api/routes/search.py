"""Federated search endpoints."""

from __future__ import annotations

import aiofiles.os
from fastapi import APIRouter, Depends, HTTPException, Query

from unisearch.api.deps import get_context
from unisearch.core.context import AppContext
from unisearch.core.logging import get_logger
from unisearch.schemas.search import (
    GroupedSearchResponse,
    OpenLocalRequest,
    OpenLocalResponse,
    SearchResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/search", tags=["search"])


@router.get("", response_model=SearchResponse)
async def search(
    q: str = Query(default="", description="Search text"),
    limit: int = Query(default=10, ge=1, le=100, description="Results per source"),
    ctx: AppContext = Depends(get_context),
) -> SearchResponse:
    """Search local files and the Drive index, ranked into one list."""
    results = await ctx.search.search(q, limit)
    return SearchResponse(query=q, results=results, total=len(results))


@router.get("/grouped", response_model=GroupedSearchResponse)
async def search_grouped(
    q: str = Query(default=""),
    limit: int = Query(default=10, ge=1, le=100),
    ctx: AppContext = Depends(get_context),
) -> GroupedSearchResponse:
    """Same ranking as ``/search``, split into local and Drive lists."""
    groups = await ctx.search.search_grouped(q, limit)
    return GroupedSearchResponse(
        query=q,
        local=groups.get("local", []),
        drive=groups.get("drive", []),
    )


@router.post("/open-local", response_model=OpenLocalResponse)
async def open_local(
    request: OpenLocalRequest,
) -> OpenLocalResponse:
    """Validate a local result before the launcher opens it.

    Opening is left to the launcher; this only confirms the path still exists.
    """
    if not request.path.strip():
        raise HTTPException(status_code=400, detail="Path is required")

    if not await aiofiles.os.path.exists(request.path):
        logger.info("open_local_missing")
        raise HTTPException(status_code=404, detail="File no longer exists")

    is_folder = await aiofiles.os.path.isdir(request.path)
    return OpenLocalResponse(path=request.path, is_folder=is_folder)
