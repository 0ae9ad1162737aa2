"""API routes for triggering and inspecting accounting syncs."""

import logging
from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response, status

from ledgersync.entities import ALL_ENTITY_TYPES
from ledgersync.models import SessionScope, SessionType
from ledgersync.rate_limit import limiter, trigger_limit
from ledgersync.schemas import (
    CancelResponse,
    CheckpointOut,
    CheckpointResetResponse,
    EntityHealthOut,
    EntityResultOut,
    EntitySyncRequest,
    FullSyncRequest,
    SessionAccepted,
    SessionDetailResponse,
    SessionProgressOut,
    SessionResultOut,
    SessionsResponse,
    SyncLogOut,
    SyncSessionOut,
    SyncStatusResponse,
)
from ledgersync.services.health import session_progress, summarize_health
from ledgersync.services.orchestrator import (
    OpenSession,
    SessionResult,
    SyncOrchestrator,
    get_orchestrator,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"])

Orchestrator = Annotated[SyncOrchestrator, Depends(get_orchestrator)]


def _result_out(result: SessionResult) -> SessionResultOut:
    return SessionResultOut(
        session_id=result.session_id,
        status=result.status.value,
        message=result.message,
        target_entities=result.target_entities,
        success_rate=result.success_rate,
        total_records_processed=result.total_records_processed,
        total_api_calls=result.total_api_calls,
        duration_seconds=result.duration_seconds,
        entities=[
            EntityResultOut(
                entity_type=str(entity.entity_type),
                status=entity.status.value,
                records_processed=entity.records_processed,
                records_inserted=entity.records_inserted,
                records_updated=entity.records_updated,
                records_unchanged=entity.records_unchanged,
                records_failed=entity.records_failed,
                api_calls_made=entity.api_calls_made,
                rate_limit_hits=entity.rate_limit_hits,
                duration_seconds=entity.duration_seconds,
                error=entity.error,
            )
            for entity in result.entity_results
        ],
    )


def _accepted(opened: OpenSession) -> SessionAccepted:
    return SessionAccepted(
        session_id=opened.session_id,
        status="running",
        target_entities=[str(entity) for entity in opened.targets],
        message=f"Sync started for {len(opened.targets)} entities",
    )


@router.post("/full", response_model=SessionResultOut | SessionAccepted)
@limiter.limit(trigger_limit)
async def trigger_full_sync(
    request: Request,
    response: Response,
    body: FullSyncRequest,
    orchestrator: Orchestrator,
    wait: bool = Query(False, description="Run the sync within the request"),
) -> SessionResultOut | SessionAccepted:
    """
    Sync every entity type from its checkpoint.

    By default the session runs in the background and 202 is returned with
    its id; poll /sync/sessions/{id} for progress. 409 if a session is
    already running for this tenant.
    """
    if wait:
        result = await orchestrator.trigger_full_sync(body.initiated_by, body.session_type)
        return _result_out(result)

    opened = await orchestrator.launch_session(
        SessionScope.FULL, ALL_ENTITY_TYPES, body.initiated_by, body.session_type
    )
    response.status_code = status.HTTP_202_ACCEPTED
    return _accepted(opened)


@router.post("/entities", response_model=SessionResultOut | SessionAccepted)
@limiter.limit(trigger_limit)
async def trigger_entity_sync(
    request: Request,
    response: Response,
    body: EntitySyncRequest,
    orchestrator: Orchestrator,
    wait: bool = Query(False, description="Run the sync within the request"),
) -> SessionResultOut | SessionAccepted:
    """
    Sync selected entity types, in priority order.

    Set force_full to ignore stored cursors and refetch everything.
    400 for unknown entity types.
    """
    if wait:
        result = await orchestrator.trigger_entity_sync(
            body.entity_types, body.initiated_by, force_full=body.force_full
        )
        return _result_out(result)

    opened = await orchestrator.launch_session(
        SessionScope.ENTITY_SPECIFIC,
        body.entity_types,
        body.initiated_by,
        SessionType.MANUAL,
        force_full=body.force_full,
    )
    response.status_code = status.HTTP_202_ACCEPTED
    return _accepted(opened)


@router.post("/sessions/{session_id}/cancel", response_model=CancelResponse)
async def cancel_session(
    session_id: str,
    orchestrator: Orchestrator,
    actor: str = Query("api", description="Who requested the cancellation"),
) -> CancelResponse:
    """Cancel a running session; it stops after the page in flight."""
    session = await orchestrator.cancel_session(session_id, actor=actor)
    return CancelResponse(
        session_id=session.id,
        status=session.status,
        message=(
            "Sync session cancelled"
            if session.status == "cancelled"
            else f"Session is already {session.status}"
        ),
    )


@router.get("/sessions", response_model=SessionsResponse)
async def list_sessions(
    orchestrator: Orchestrator,
    limit: int = Query(20, ge=1, le=100),
) -> SessionsResponse:
    """Most recent sync sessions, newest first."""
    sessions = await orchestrator.list_recent_sessions(limit)
    return SessionsResponse(
        sessions=[SyncSessionOut.model_validate(session) for session in sessions]
    )


@router.get("/sessions/{session_id}", response_model=SessionDetailResponse)
async def get_session(session_id: str, orchestrator: Orchestrator) -> SessionDetailResponse:
    """A session with its per-entity logs and progress."""
    session = await orchestrator.get_session(session_id)
    logs = await orchestrator.get_session_logs(session_id)
    progress = session_progress(session, logs)
    return SessionDetailResponse(
        session=SyncSessionOut.model_validate(session),
        logs=[SyncLogOut.model_validate(log) for log in logs],
        progress=SessionProgressOut.model_validate(progress),
    )


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(orchestrator: Orchestrator) -> SyncStatusResponse:
    """Health of every entity's checkpoint."""
    now = datetime.now(UTC)
    checkpoints = await orchestrator.checkpoints.list_all()
    summary = summarize_health(checkpoints, now)
    return SyncStatusResponse(
        overall=summary.overall.value,
        total_entities=summary.total_entities,
        healthy_entities=summary.healthy_entities,
        warning_entities=summary.warning_entities,
        error_entities=summary.error_entities,
        last_successful_sync_at=summary.last_successful_sync_at,
        entities_needing_attention=[
            EntityHealthOut.model_validate(entity)
            for entity in summary.entities_needing_attention
        ],
        checkpoints=[CheckpointOut.model_validate(checkpoint) for checkpoint in checkpoints],
        timestamp=now,
    )


@router.delete("/checkpoints/{entity_type}", response_model=CheckpointResetResponse)
async def reset_checkpoint(
    entity_type: str,
    orchestrator: Orchestrator,
    actor: str = Query("api", description="Who requested the reset"),
) -> CheckpointResetResponse:
    """
    Rewind an entity's cursor to the epoch.

    WARNING: the next sync of this entity refetches its full history.
    """
    state = await orchestrator.reset_checkpoint(entity_type, actor=actor)
    return CheckpointResetResponse(
        entity_type=state.entity_type,
        cursor=state.cursor,
        status=state.status.value,
        message=f"Checkpoint for {state.entity_type} reset; next sync is a full resync",
    )
