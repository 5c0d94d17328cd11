"""Pydantic schemas for Drive authentication."""

from __future__ import annotations

from pydantic import BaseModel, Field


class AuthStatusResponse(BaseModel):
    """Whether a Drive credential is available."""

    configured: bool = Field(description="OAuth client credentials are set")
    authenticated: bool
    session_state: str


class AccessTokenResponse(BaseModel):
    access_token: str | None = None


class SignInResponse(BaseModel):
    authenticated: bool
    message: str
