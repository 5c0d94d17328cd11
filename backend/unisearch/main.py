"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from unisearch.api.router import api_router
from unisearch.core.config import Settings, get_settings
from unisearch.core.context import build_context
from unisearch.core.logging import get_logger, setup_logging

logger = get_logger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Build the context on startup, tear it down on shutdown."""
        logger.info(
            "starting_application",
            app_name=settings.app_name,
            version=settings.version,
            host=settings.host,
            port=settings.port,
        )
        context = await build_context(settings)
        app.state.context = context
        await context.start()
        try:
            yield
        finally:
            logger.info("shutting_down_application")
            await context.aclose()

    app = FastAPI(
        title=settings.app_name,
        description="Federated local and Google Drive file search for the desktop launcher",
        version=settings.version,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    # Include API routes
    app.include_router(api_router)

    return app


def main() -> None:
    """Run the application with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
