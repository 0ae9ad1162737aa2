"""Sync health classification and session progress reporting."""

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from ledgersync.config import get_settings
from ledgersync.models import CheckpointStatus, SessionStatus, SyncLog, SyncSession
from ledgersync.services.checkpoint_store import CheckpointState

settings = get_settings()


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    OVERDUE = "overdue"
    NEVER_SYNCED = "never_synced"
    ERROR = "error"


# Statuses counted as errors in the overall summary
_ERROR_STATUSES = {HealthStatus.ERROR, HealthStatus.NEVER_SYNCED, HealthStatus.OVERDUE}


@dataclass
class EntityHealth:
    entity_type: str
    status: HealthStatus
    issue: str | None
    hours_since_last_sync: float | None
    last_successful_sync_at: datetime | None
    consecutive_error_count: int


@dataclass
class HealthSummary:
    overall: HealthStatus
    total_entities: int
    healthy_entities: int
    warning_entities: int
    error_entities: int
    last_successful_sync_at: datetime | None
    entities_needing_attention: list[EntityHealth] = field(default_factory=list)


@dataclass
class SessionProgress:
    session_id: str
    status: str
    percent_complete: int
    entities_completed: int
    entities_total: int
    current_entity: str | None = None
    estimated_seconds_remaining: int | None = None


def describe_issue(
    status: HealthStatus, hours_since_last_sync: float | None, error_count: int
) -> str | None:
    """Human-readable explanation of a non-healthy status."""
    if status == HealthStatus.ERROR:
        suffix = f" ({error_count} consecutive failures)" if error_count else ""
        return f"Sync errors detected{suffix}"
    if status == HealthStatus.NEVER_SYNCED:
        return "Never been synced - requires initial sync"
    if status == HealthStatus.OVERDUE:
        hours = hours_since_last_sync or 0
        if hours > 48:
            return f"Severely overdue ({int(hours // 24)} days since last sync)"
        return f"Overdue ({int(hours)} hours since last sync)"
    if status == HealthStatus.WARNING:
        return f"Last successful sync {int(hours_since_last_sync or 0)} hours ago"
    return None


def entity_health(
    checkpoint: CheckpointState,
    now: datetime,
    warning_hours: int = settings.health_warning_hours,
    overdue_hours: int = settings.health_overdue_hours,
) -> EntityHealth:
    last_success = checkpoint.last_successful_sync_at
    hours = (now - last_success).total_seconds() / 3600 if last_success else None

    if checkpoint.status == CheckpointStatus.ERROR:
        status = HealthStatus.ERROR
    elif last_success is None:
        status = HealthStatus.NEVER_SYNCED
    elif hours > overdue_hours:
        status = HealthStatus.OVERDUE
    elif hours > warning_hours:
        status = HealthStatus.WARNING
    else:
        status = HealthStatus.HEALTHY

    return EntityHealth(
        entity_type=checkpoint.entity_type,
        status=status,
        issue=describe_issue(status, hours, checkpoint.consecutive_error_count),
        hours_since_last_sync=round(hours, 2) if hours is not None else None,
        last_successful_sync_at=last_success,
        consecutive_error_count=checkpoint.consecutive_error_count,
    )


def summarize_health(checkpoints: Sequence[CheckpointState], now: datetime) -> HealthSummary:
    """Roll per-entity health up into one dashboard summary."""
    entities = [entity_health(checkpoint, now) for checkpoint in checkpoints]

    healthy = sum(1 for e in entities if e.status == HealthStatus.HEALTHY)
    warning = sum(1 for e in entities if e.status == HealthStatus.WARNING)
    errors = sum(1 for e in entities if e.status in _ERROR_STATUSES)

    if not entities or errors:
        overall = HealthStatus.ERROR
    elif warning:
        overall = HealthStatus.WARNING
    else:
        overall = HealthStatus.HEALTHY

    successes = [e.last_successful_sync_at for e in entities if e.last_successful_sync_at]

    return HealthSummary(
        overall=overall,
        total_entities=len(entities),
        healthy_entities=healthy,
        warning_entities=warning,
        error_entities=errors,
        last_successful_sync_at=max(successes) if successes else None,
        entities_needing_attention=[e for e in entities if e.status != HealthStatus.HEALTHY],
    )


def session_progress(session: SyncSession, logs: Sequence[SyncLog]) -> SessionProgress:
    """
    Progress of a session from the log rows written so far.

    Each targeted entity gets exactly one log row when it finishes, so the
    count of logged entities is the count of finished entities.
    """
    targets = list(session.target_entities or [])
    logged = {log.entity_type for log in logs}
    completed = sum(1 for entity in targets if entity in logged)
    total = len(targets)
    percent = round(completed / total * 100) if total else 0

    current = None
    estimate = None
    if session.status == SessionStatus.RUNNING.value:
        current = next((entity for entity in targets if entity not in logged), None)
        durations = [log.duration_seconds for log in logs]
        if durations and completed < total:
            average = sum(durations) / len(durations)
            estimate = int(average * (total - completed))

    return SessionProgress(
        session_id=session.id,
        status=session.status,
        percent_complete=percent,
        entities_completed=completed,
        entities_total=total,
        current_entity=current,
        estimated_seconds_remaining=estimate,
    )
