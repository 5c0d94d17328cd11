"""FastAPI dependencies."""

from __future__ import annotations

from fastapi import Request

from unisearch.core.context import AppContext


def get_context(request: Request) -> AppContext:
    """Return the application context created by the lifespan."""
    return request.app.state.context
