"""FastAPI application for the ledgersync backend."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from ledgersync.config import get_settings
from ledgersync.database import init_db
from ledgersync.exceptions import (
    ConcurrentSyncConflict,
    InvalidEntityType,
    SessionAlreadyRunning,
    SessionNotFound,
)
from ledgersync.rate_limit import limiter
from ledgersync.routers import health_router, sync_router
from ledgersync.services.orchestrator import get_orchestrator
from ledgersync.tasks.scheduler import setup_scheduler, shutdown_scheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting ledgersync backend...")

    # Create missing tables and seed one checkpoint per entity type
    try:
        await init_db()
        await get_orchestrator().checkpoints.initialize_all()
        logger.info("Database ready")
    except Exception as e:
        logger.error(f"Database not ready: {e}")
        raise

    if settings.daily_sync_enabled:
        setup_scheduler()

    yield

    # Shutdown
    shutdown_scheduler()
    await get_orchestrator().shutdown()
    logger.info("ledgersync backend shut down")


# Create FastAPI app
app = FastAPI(
    title="ledgersync API",
    description="Incremental sync of Xero accounting records into a local staging store",
    version="0.1.0",
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SessionAlreadyRunning)
async def session_running_handler(request: Request, exc: SessionAlreadyRunning):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "session_id": exc.session_id},
    )


@app.exception_handler(ConcurrentSyncConflict)
async def sync_conflict_handler(request: Request, exc: ConcurrentSyncConflict):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(InvalidEntityType)
async def invalid_entity_handler(request: Request, exc: InvalidEntityType):
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc), "invalid": exc.values},
    )


@app.exception_handler(SessionNotFound)
async def session_not_found_handler(request: Request, exc: SessionNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# Include routers
app.include_router(health_router)
app.include_router(sync_router, prefix=settings.api_v1_prefix)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "ledgersync API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ledgersync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
