"""API router that aggregates all routes."""

from fastapi import APIRouter

from unisearch.api.routes import drive, health, search

api_router = APIRouter(prefix="/api")

# Include route modules
api_router.include_router(health.router)

# V1 API routes
v1_router = APIRouter(prefix="/v1")
v1_router.include_router(search.router)
v1_router.include_router(drive.router)

api_router.include_router(v1_router)
