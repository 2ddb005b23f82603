"""API routes package."""

from syncserver.routes.sync_routes import router as sync_router

__all__ = ["sync_router"]
