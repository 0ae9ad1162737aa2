"""Pydantic schemas for API request/response validation."""

from ledgersync.schemas.sync import (
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

__all__ = [
    "CancelResponse",
    "CheckpointOut",
    "CheckpointResetResponse",
    "EntityHealthOut",
    "EntityResultOut",
    "EntitySyncRequest",
    "FullSyncRequest",
    "SessionAccepted",
    "SessionDetailResponse",
    "SessionProgressOut",
    "SessionResultOut",
    "SessionsResponse",
    "SyncLogOut",
    "SyncSessionOut",
    "SyncStatusResponse",
]
