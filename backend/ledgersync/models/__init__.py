"""Database models."""

from ledgersync.models.audit_event import SyncAuditEvent
from ledgersync.models.checkpoint import EPOCH, CheckpointStatus, SyncCheckpoint
from ledgersync.models.staged_record import STAGING_MODELS, StagedRecordMixin
from ledgersync.models.sync_log import LogStatus, SyncLog
from ledgersync.models.sync_session import (
    SessionScope,
    SessionStatus,
    SessionType,
    SyncSession,
    SyncSessionLease,
)

__all__ = [
    "EPOCH",
    "STAGING_MODELS",
    "CheckpointStatus",
    "LogStatus",
    "SessionScope",
    "SessionStatus",
    "SessionType",
    "StagedRecordMixin",
    "SyncAuditEvent",
    "SyncCheckpoint",
    "SyncLog",
    "SyncSession",
    "SyncSessionLease",
]
