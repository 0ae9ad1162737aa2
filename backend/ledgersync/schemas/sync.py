"""Pydantic schemas for the sync trigger and status endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ledgersync.models import SessionType


class FullSyncRequest(BaseModel):
    """Body for triggering a sync of every entity type."""

    initiated_by: str = Field("api", min_length=1, max_length=255)
    session_type: SessionType = SessionType.MANUAL


class EntitySyncRequest(BaseModel):
    """Body for triggering a sync of selected entity types."""

    entity_types: list[str] = Field(..., min_length=1)
    initiated_by: str = Field("api", min_length=1, max_length=255)
    force_full: bool = False


class EntityResultOut(BaseModel):
    """Outcome of one entity within a finished session."""

    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    status: str
    records_processed: int
    records_inserted: int
    records_updated: int
    records_unchanged: int
    records_failed: int
    api_calls_made: int
    rate_limit_hits: int
    duration_seconds: float
    error: str | None = None


class SessionResultOut(BaseModel):
    """Response for a sync that ran to completion within the request."""

    session_id: str
    status: str
    message: str
    target_entities: list[str]
    success_rate: float
    total_records_processed: int
    total_api_calls: int
    duration_seconds: float
    entities: list[EntityResultOut]


class SessionAccepted(BaseModel):
    """Response for a sync started in the background."""

    session_id: str
    status: str
    target_entities: list[str]
    message: str


class SyncSessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    session_type: str
    scope: str
    target_entities: list[str]
    status: str
    tenant_id: str
    initiated_by: str
    started_at: datetime
    completed_at: datetime | None = None
    total_duration_seconds: float | None = None
    total_records_processed: int
    total_api_calls: int
    success_rate: float | None = None
    error_summary: str | None = None


class SyncLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    status: str
    started_at: datetime
    completed_at: datetime
    duration_seconds: float
    records_requested: int
    records_received: int
    records_processed: int
    records_inserted: int
    records_updated: int
    records_unchanged: int
    records_failed: int
    api_calls_made: int
    rate_limit_hits: int
    error_details: dict[str, Any] | None = None


class SessionProgressOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    percent_complete: int
    entities_completed: int
    entities_total: int
    current_entity: str | None = None
    estimated_seconds_remaining: int | None = None


class SessionDetailResponse(BaseModel):
    """A session with its per-entity logs and progress."""

    session: SyncSessionOut
    logs: list[SyncLogOut]
    progress: SessionProgressOut


class SessionsResponse(BaseModel):
    sessions: list[SyncSessionOut]


class CheckpointOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    cursor: datetime
    status: str
    has_more_records: bool
    error_message: str | None = None
    consecutive_error_count: int
    rate_limit_hit_count: int
    records_processed: int
    total_sync_count: int
    average_duration_seconds: float
    last_successful_sync_at: datetime | None = None


class EntityHealthOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    status: str
    issue: str | None = None
    hours_since_last_sync: float | None = None
    last_successful_sync_at: datetime | None = None


class SyncStatusResponse(BaseModel):
    """Dashboard view of every entity's sync health."""

    overall: str
    total_entities: int
    healthy_entities: int
    warning_entities: int
    error_entities: int
    last_successful_sync_at: datetime | None = None
    entities_needing_attention: list[EntityHealthOut]
    checkpoints: list[CheckpointOut]
    timestamp: datetime


class CancelResponse(BaseModel):
    session_id: str
    status: str
    message: str


class CheckpointResetResponse(BaseModel):
    entity_type: str
    cursor: datetime
    status: str
    message: str
