"""Health and probe endpoints."""

import logging
from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.database import check_db_ready, get_db
from ledgersync.models import SessionStatus, SyncCheckpoint, SyncSession
from ledgersync.services.checkpoint_store import CheckpointState, cover_all_entities
from ledgersync.services.health import summarize_health

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    sync_health: str
    entities_tracked: int
    running_sessions: int
    last_successful_sync: datetime | None = None


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> HealthResponse:
    """
    Health check endpoint with sync status.

    The service is healthy when the database answers; sync_health reports
    whether the entity checkpoints are up to date.
    """
    now = datetime.now(UTC)
    result = await db.execute(select(SyncCheckpoint))
    checkpoints = cover_all_entities(
        CheckpointState.from_row(row) for row in result.scalars()
    )
    summary = summarize_health(checkpoints, now)

    running = await db.scalar(
        select(func.count(SyncSession.id)).where(
            SyncSession.status == SessionStatus.RUNNING.value
        )
    )

    return HealthResponse(
        status="healthy",
        timestamp=now,
        sync_health=summary.overall.value,
        entities_tracked=summary.total_entities,
        running_sessions=running or 0,
        last_successful_sync=summary.last_successful_sync_at,
    )


@router.get("/ready")
async def readiness_check():
    """Readiness probe: database reachable and schema present."""
    try:
        await check_db_ready()
    except Exception as e:
        logger.warning(f"Readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "not_ready", "detail": str(e)})
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> dict:
    """Simple liveness probe for container orchestration."""
    return {"status": "alive"}
