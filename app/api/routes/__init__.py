"""Routes package initialization.

This module exports the route collection for the application.
"""

from fastapi import APIRouter

from app.api.routes import routing_rules, redirect, health
from app.core.config import settings

# Create root router
api_router = APIRouter()

# Include routing rule management routes with API prefix
api_router.include_router(
    routing_rules.router,
    prefix=settings.API_PREFIX
)

# Include health check routes with API prefix
api_router.include_router(
    health.router,
    prefix=settings.API_PREFIX
)

# Include redirect routes at the root path (no prefix)
# This makes short URLs available directly at /{slug}
api_router.include_router(
    redirect.router
)

__all__ = ["api_router"]
