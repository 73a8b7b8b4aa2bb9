"""API routes package."""

from relay.routes.relay_routes import router as relay_router

__all__ = ["relay_router"]
