"""Google Drive account and indexer endpoints."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from unisearch.api.deps import get_context
from unisearch.core.context import AppContext
from unisearch.core.errors import (
    AuthInProgressError,
    AuthorizationDeniedError,
    AuthTimeoutError,
    TokenExchangeError,
)
from unisearch.core.logging import get_logger
from unisearch.schemas.auth import AccessTokenResponse, AuthStatusResponse, SignInResponse
from unisearch.schemas.index import IndexActionResponse, IndexStateResponse
from unisearch.services.events import IndexerEvent, IndexerEventType

logger = get_logger(__name__)

router = APIRouter(prefix="/drive", tags=["drive"])

HEARTBEAT_INTERVAL = 30  # seconds


async def _index_state(ctx: AppContext) -> IndexStateResponse:
    state = await ctx.indexer.get_state()
    response = IndexStateResponse.model_validate(state)
    response.is_crawling = ctx.indexer.is_crawling
    response.is_polling = ctx.indexer.is_polling
    return response


# =============================================================================
# Authentication
# =============================================================================


@router.get("/auth/status", response_model=AuthStatusResponse)
async def auth_status(ctx: AppContext = Depends(get_context)) -> AuthStatusResponse:
    """Report whether OAuth is configured and a credential is stored."""
    return AuthStatusResponse(
        configured=ctx.settings.google_oauth_configured,
        authenticated=await ctx.oauth.is_authenticated(),
        session_state=ctx.oauth.session_state.value,
    )


@router.post("/auth/sign-in", response_model=SignInResponse)
async def sign_in(ctx: AppContext = Depends(get_context)) -> SignInResponse:
    """Open the browser for Google sign-in and wait for the redirect.

    On success the indexer session (full crawl, then polling) starts in
    the background.
    """
    if not ctx.settings.google_oauth_configured:
        raise HTTPException(
            status_code=503,
            detail="Google OAuth is not configured. Set UNISEARCH_GOOGLE_CLIENT_ID and UNISEARCH_GOOGLE_CLIENT_SECRET.",
        )

    try:
        await ctx.oauth.sign_in()
    except AuthInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except AuthTimeoutError as e:
        raise HTTPException(status_code=408, detail=str(e))
    except AuthorizationDeniedError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except TokenExchangeError as e:
        logger.error("sign_in_token_exchange_failed", error=str(e))
        raise HTTPException(status_code=502, detail=str(e))

    ctx.indexer.start_session(force_crawl=True)
    return SignInResponse(authenticated=True, message="Signed in to Google Drive")


@router.post("/auth/sign-out", response_model=AuthStatusResponse)
async def sign_out(ctx: AppContext = Depends(get_context)) -> AuthStatusResponse:
    """Revoke the grant, delete the credential and wipe the Drive index."""
    await ctx.oauth.sign_out()
    await ctx.indexer.reset()
    return AuthStatusResponse(
        configured=ctx.settings.google_oauth_configured,
        authenticated=False,
        session_state=ctx.oauth.session_state.value,
    )


@router.get("/auth/token", response_model=AccessTokenResponse)
async def access_token(ctx: AppContext = Depends(get_context)) -> AccessTokenResponse:
    """Return a valid access token, refreshing it if needed."""
    token = await ctx.oauth.get_access_token()
    if token is None:
        raise HTTPException(status_code=401, detail="Not signed in to Google Drive")
    return AccessTokenResponse(access_token=token)


# =============================================================================
# Indexer
# =============================================================================


@router.get("/index/state", response_model=IndexStateResponse)
async def index_state(ctx: AppContext = Depends(get_context)) -> IndexStateResponse:
    """Get the indexer status and checkpoint."""
    return await _index_state(ctx)


@router.post("/index/start", response_model=IndexActionResponse)
async def start_indexing(ctx: AppContext = Depends(get_context)) -> IndexActionResponse:
    """Start or resume the full crawl in the background."""
    if not await ctx.oauth.is_authenticated():
        raise HTTPException(status_code=401, detail="Not signed in to Google Drive")

    if ctx.indexer.is_crawling:
        return IndexActionResponse(
            accepted=False,
            message="Indexing is already running",
            state=await _index_state(ctx),
        )

    ctx.indexer.start_session(force_crawl=True)
    # Let the crawl record its status before reporting it
    await asyncio.sleep(0)
    return IndexActionResponse(
        accepted=True,
        message="Indexing started",
        state=await _index_state(ctx),
    )


@router.post("/index/stop", response_model=IndexActionResponse)
async def stop_indexing(ctx: AppContext = Depends(get_context)) -> IndexActionResponse:
    """Pause the running crawl at the next page boundary."""
    accepted = ctx.indexer.stop()
    return IndexActionResponse(
        accepted=accepted,
        message="Stop requested" if accepted else "Indexing is not running",
        state=await _index_state(ctx),
    )


@router.post("/index/reset", response_model=IndexActionResponse)
async def reset_index(ctx: AppContext = Depends(get_context)) -> IndexActionResponse:
    """Stop the indexer and drop every indexed Drive file."""
    await ctx.indexer.reset()
    return IndexActionResponse(
        accepted=True,
        message="Index reset",
        state=await _index_state(ctx),
    )


@router.get("/index/events")
async def index_events(ctx: AppContext = Depends(get_context)) -> StreamingResponse:
    """Subscribe to indexer events as Server-Sent Events.

    Event types: progress, completed, paused, error, incremental_sync,
    state_changed, plus a heartbeat every 30 seconds.
    """
    broadcaster = ctx.events

    async def event_generator():
        async with broadcaster.subscribe() as queue:
            yield IndexerEvent(
                type=IndexerEventType.HEARTBEAT,
                payload={"message": "connected"},
            ).to_sse()

            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_INTERVAL)
                    yield event.to_sse()
                except asyncio.TimeoutError:
                    yield IndexerEvent(
                        type=IndexerEventType.HEARTBEAT,
                        payload={"message": "ping"},
                    ).to_sse()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )
