"""API routers."""

from ledgersync.routers.health import router as health_router
from ledgersync.routers.sync import router as sync_router

__all__ = ["health_router", "sync_router"]
