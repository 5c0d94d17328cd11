"""Google OAuth session manager for the installed-app flow.

Provides:
- Browser sign-in with PKCE and a one-shot loopback listener
- Token exchange, refresh and revocation through authlib's httpx client
- Persistence of the token set via the credential store
- Access tokens refreshed on demand, one refresh in flight at a time
- Best-effort revocation on sign-out
"""

from __future__ import annotations

import asyncio
import socket
import time
import webbrowser
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx
import uvicorn
from authlib.common.security import generate_token
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, ValidationError

from unisearch.core.config import Settings
from unisearch.core.errors import (
    AuthError,
    AuthInProgressError,
    AuthorizationDeniedError,
    AuthTimeoutError,
    CredentialStoreError,
    TokenExchangeError,
)
from unisearch.core.logging import get_logger, mask_secret
from unisearch.services.credential_store import CredentialStore

logger = get_logger(__name__)

LOOPBACK_HOST = "127.0.0.1"
CALLBACK_PATH = "/callback"
VERIFIER_LENGTH = 64
STATE_LENGTH = 32

_PAGE = """<!doctype html>
<html><head><meta charset="utf-8"><title>unisearch</title></head>
<body style="font-family: sans-serif; text-align: center; margin-top: 4em">
<h2>{title}</h2><p>{message}</p></body></html>"""


class SessionState(str, Enum):
    """Where the Drive session currently stands."""

    NO_CREDENTIAL = "no_credential"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    REFRESHING = "refreshing"


class TokenSet(BaseModel):
    """OAuth tokens as persisted in the credential store."""

    access_token: str
    refresh_token: str | None = None
    expires_at: int | None = None  # epoch milliseconds
    token_type: str | None = None

    def needs_refresh(self, margin_seconds: float, now_ms: int) -> bool:
        if self.expires_at is None:
            return True
        return now_ms + int(margin_seconds * 1000) >= self.expires_at

    @classmethod
    def from_token_response(
        cls,
        payload: dict[str, Any],
        now_ms: int,
        previous: "TokenSet | None" = None,
    ) -> "TokenSet":
        """Build a token set from a token endpoint response.

        A refresh response usually omits ``refresh_token``; the previous
        one is kept in that case.
        """
        expires_in = payload.get("expires_in")
        expires_at = None
        if expires_in is not None:
            expires_at = now_ms + int(float(expires_in) * 1000)

        refresh_token = payload.get("refresh_token")
        if not refresh_token and previous is not None:
            refresh_token = previous.refresh_token

        return cls(
            access_token=payload["access_token"],
            refresh_token=refresh_token,
            expires_at=expires_at,
            token_type=payload.get("token_type"),
        )


class LoopbackReceiver:
    """One-shot HTTP listener on 127.0.0.1 that receives the OAuth redirect.

    Serves ``/callback`` only; every other path gets a 404 and leaves the
    flow running.
    """

    def __init__(self, expected_state: str, host: str = LOOPBACK_HOST):
        self.expected_state = expected_state
        self.host = host
        self.redirect_uri: str | None = None
        self._result: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task | None = None
        self.app = self._build_app()

    def _build_app(self) -> FastAPI:
        app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

        @app.get(CALLBACK_PATH)
        async def callback(request: Request) -> HTMLResponse:
            return self._handle_callback(dict(request.query_params))

        return app

    def _handle_callback(self, params: dict[str, str]) -> HTMLResponse:
        if self._result.done():
            return HTMLResponse(
                _PAGE.format(title="Already handled", message="You can close this window."),
            )

        error: AuthError | None = None
        if params.get("error"):
            error = AuthorizationDeniedError(f"Authorization failed: {params['error']}")
        elif params.get("state") != self.expected_state:
            error = AuthorizationDeniedError("OAuth state mismatch")
        elif not params.get("code"):
            error = AuthorizationDeniedError("Callback did not include an authorization code")

        if error is not None:
            self._result.set_exception(error)
            logger.warning("oauth_callback_rejected", reason=str(error))
            return HTMLResponse(
                _PAGE.format(title="Sign-in failed", message=str(error)),
                status_code=400,
            )

        self._result.set_result(params["code"])
        logger.info("oauth_callback_received")
        return HTMLResponse(
            _PAGE.format(
                title="Signed in to Google Drive",
                message="You can close this window and return to the launcher.",
            )
        )

    async def start(self) -> str:
        """Bind an OS-assigned port and start serving. Returns the redirect URI."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self.host, 0))
        port = sock.getsockname()[1]

        config = uvicorn.Config(
            self.app,
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=1,
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[sock]))

        while not self._server.started:
            if self._serve_task.done():
                sock.close()
                raise AuthError("Loopback listener failed to start")
            await asyncio.sleep(0.01)

        self.redirect_uri = f"http://{self.host}:{port}{CALLBACK_PATH}"
        logger.debug("oauth_listener_started", redirect_uri=self.redirect_uri)
        return self.redirect_uri

    async def wait_for_code(self, timeout: float) -> str:
        """Wait for the redirect and return the authorization code."""
        try:
            return await asyncio.wait_for(asyncio.shield(self._result), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise AuthTimeoutError(
                f"No OAuth callback received within {timeout:.0f} seconds"
            ) from e

    async def close(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._serve_task is not None:
            await self._serve_task
            self._serve_task = None
        if not self._result.done():
            self._result.cancel()


class OAuthSessionManager:
    """Keeps a delegated Drive credential valid.

    All state lives on the instance; the application context owns one.
    """

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        transport: httpx.AsyncBaseTransport | None = None,
        open_browser: Callable[[str], Any] = webbrowser.open,
        receiver_factory: Callable[[str], LoopbackReceiver] = LoopbackReceiver,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self._store = store
        self._transport = transport
        self._open_browser = open_browser
        self._receiver_factory = receiver_factory
        self._clock = clock

        self._tokens: TokenSet | None = None
        self._loaded = False
        self._state = SessionState.NO_CREDENTIAL
        self._signing_in = False

        self._refresh_lock = asyncio.Lock()
        self._refresh_task: asyncio.Task[TokenSet | None] | None = None
        # Bumped on sign-out so a refresh that finishes afterwards is discarded
        self._generation = 0

    # ========== State ==========

    @property
    def session_state(self) -> SessionState:
        if (
            self._state == SessionState.AUTHENTICATED
            and self._tokens is not None
            and self._tokens.needs_refresh(0, self._now_ms())
        ):
            return SessionState.EXPIRED
        return self._state

    async def is_authenticated(self) -> bool:
        """Whether a usable credential is stored."""
        return await self._load() is not None

    # ========== Sign-in ==========

    def _oauth_client(self, redirect_uri: str | None = None) -> AsyncOAuth2Client:
        """A short-lived OAuth client for one sign-in, refresh or revocation."""
        return AsyncOAuth2Client(
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            scope=" ".join(self.settings.google_scopes),
            redirect_uri=redirect_uri,
            code_challenge_method="S256",
            token_endpoint_auth_method="client_secret_post",
            revocation_endpoint_auth_method="client_secret_post",
            timeout=self.settings.http_timeout,
            transport=self._transport,
        )

    def build_authorization_url(
        self, client: AsyncOAuth2Client, code_verifier: str, state: str
    ) -> str:
        url, _ = client.create_authorization_url(
            self.settings.google_auth_uri,
            state=state,
            code_verifier=code_verifier,
            access_type="offline",
            prompt="consent",
        )
        return url

    async def sign_in(self) -> TokenSet:
        """Run the browser authorization flow and persist the resulting tokens.

        Raises:
            AuthInProgressError: Another sign-in is running.
            AuthTimeoutError: The browser never reached the callback.
            AuthorizationDeniedError: The callback was an error or did not match.
            TokenExchangeError: The code could not be exchanged.
        """
        if not self.settings.google_oauth_configured:
            raise AuthError("Google OAuth client is not configured")
        if self._signing_in:
            raise AuthInProgressError("A sign-in is already in progress")

        self._signing_in = True
        self._state = SessionState.AUTHENTICATING
        try:
            code_verifier = generate_token(VERIFIER_LENGTH)
            state = generate_token(STATE_LENGTH)

            receiver = self._receiver_factory(state)
            redirect_uri = await receiver.start()
            async with self._oauth_client(redirect_uri) as client:
                try:
                    url = self.build_authorization_url(client, code_verifier, state)
                    logger.info("oauth_flow_started", redirect_uri=redirect_uri)
                    self._open_browser(url)
                    code = await receiver.wait_for_code(self.settings.oauth_callback_timeout)
                finally:
                    await receiver.close()

                payload = await self._request_token(
                    client.fetch_token(
                        self.settings.google_token_uri,
                        code=code,
                        code_verifier=code_verifier,
                        redirect_uri=redirect_uri,
                    )
                )
            tokens = TokenSet.from_token_response(payload, self._now_ms())
            await self._store_tokens(tokens)
            self._state = SessionState.AUTHENTICATED
            logger.info(
                "oauth_signed_in",
                has_refresh_token=tokens.refresh_token is not None,
                access_token=mask_secret(tokens.access_token),
            )
            return tokens
        finally:
            self._signing_in = False
            if self._state == SessionState.AUTHENTICATING:
                self._state = (
                    SessionState.AUTHENTICATED if self._tokens else SessionState.NO_CREDENTIAL
                )

    # ========== Tokens ==========

    async def get_access_token(self) -> str | None:
        """Return a valid access token, refreshing it when close to expiry.

        Returns None when no credential exists or it cannot be refreshed.
        """
        tokens = await self._load()
        if tokens is None:
            return None
        if not tokens.needs_refresh(self.settings.token_expiry_margin, self._now_ms()):
            return tokens.access_token

        refreshed = await self._refresh_single_flight()
        return refreshed.access_token if refreshed else None

    async def force_refresh(self) -> str | None:
        """Refresh regardless of expiry, e.g. after the API answered 401."""
        if await self._load() is None:
            return None
        refreshed = await self._refresh_single_flight()
        return refreshed.access_token if refreshed else None

    async def _refresh_single_flight(self) -> TokenSet | None:
        async with self._refresh_lock:
            if self._refresh_task is None or self._refresh_task.done():
                self._refresh_task = asyncio.create_task(self._refresh())
            task = self._refresh_task
        # Shielded so one cancelled caller does not abort the shared refresh
        return await asyncio.shield(task)

    async def _refresh(self) -> TokenSet | None:
        tokens = self._tokens
        generation = self._generation
        if tokens is None:
            return None
        if not tokens.refresh_token:
            logger.warning("oauth_refresh_unavailable", reason="no_refresh_token")
            self._state = SessionState.EXPIRED
            return None

        self._state = SessionState.REFRESHING
        try:
            async with self._oauth_client() as client:
                payload = await self._request_token(
                    client.refresh_token(
                        self.settings.google_token_uri,
                        refresh_token=tokens.refresh_token,
                    )
                )
        except TokenExchangeError as e:
            if generation != self._generation:
                return None
            if e.is_revoked:
                logger.warning("oauth_refresh_revoked")
                await self._clear()
                return None
            # Keep the stale credential; the next call tries again
            logger.error("oauth_refresh_failed", error=str(e))
            self._state = SessionState.EXPIRED
            return None

        if generation != self._generation:
            logger.info("oauth_refresh_discarded")
            return None

        refreshed = TokenSet.from_token_response(payload, self._now_ms(), previous=tokens)
        await self._store_tokens(refreshed)
        self._state = SessionState.AUTHENTICATED
        logger.info("oauth_token_refreshed", expires_at=refreshed.expires_at)
        return refreshed

    @staticmethod
    async def _request_token(request: Awaitable[dict[str, Any]]) -> dict[str, Any]:
        """Await an authlib token request, mapping its failures to TokenExchangeError."""
        try:
            token = await request
        except OAuthError as e:
            raise TokenExchangeError(f"Token request failed: {e.error}", error=e.error) from e
        except httpx.HTTPStatusError as e:
            try:
                error = e.response.json().get("error")
            except ValueError:
                error = None
            raise TokenExchangeError(
                f"Token request failed with HTTP {e.response.status_code}", error=error
            ) from e
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"Token endpoint unreachable: {e}") from e
        except ValueError as e:
            raise TokenExchangeError("Token endpoint returned a malformed response") from e

        if not token or "access_token" not in token:
            raise TokenExchangeError("Token response did not include an access token")
        return dict(token)

    # ========== Sign-out ==========

    async def sign_out(self) -> None:
        """Revoke the grant if possible and delete the local credential."""
        tokens = await self._load()
        if tokens is not None:
            token = tokens.refresh_token or tokens.access_token
            hint = "refresh_token" if tokens.refresh_token else "access_token"
            try:
                async with self._oauth_client() as client:
                    response = await client.revoke_token(
                        self.settings.google_revoke_uri,
                        token=token,
                        token_type_hint=hint,
                    )
                logger.debug("oauth_revoke_response", status=response.status_code)
            except httpx.HTTPError as e:
                logger.warning("oauth_revoke_failed", error=str(e))

        await self._clear()
        logger.info("oauth_signed_out")

    # ========== Persistence ==========

    async def _load(self) -> TokenSet | None:
        if self._loaded:
            return self._tokens

        raw = await self._store.get()
        tokens = None
        if raw:
            try:
                tokens = TokenSet.model_validate_json(raw)
            except ValidationError as e:
                logger.warning("stored_credential_invalid", error=str(e))

        self._tokens = tokens
        self._loaded = True
        if self._state != SessionState.AUTHENTICATING:
            self._state = (
                SessionState.AUTHENTICATED if tokens else SessionState.NO_CREDENTIAL
            )
        return tokens

    async def _store_tokens(self, tokens: TokenSet) -> None:
        self._tokens = tokens
        self._loaded = True
        try:
            await self._store.set(tokens.model_dump_json())
        except CredentialStoreError as e:
            # The in-memory tokens stay usable for this process
            logger.error("credential_persist_failed", error=str(e))

    async def _clear(self) -> None:
        self._generation += 1
        self._tokens = None
        self._loaded = True
        self._state = SessionState.NO_CREDENTIAL
        try:
            await self._store.delete()
        except CredentialStoreError as e:
            # Signed out for this process; the stored copy goes on the next attempt
            logger.error("credential_delete_failed", error=str(e))

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)
