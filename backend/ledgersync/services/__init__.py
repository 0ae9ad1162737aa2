"""Sync engine services."""

from ledgersync.services.checkpoint_store import CheckpointClaim, CheckpointState, CheckpointStore
from ledgersync.services.context import SyncContext
from ledgersync.services.entity_worker import EntitySyncResult, EntitySyncWorker, WorkerState
from ledgersync.services.events import AuditLogSink, EventSink, LoggingEventSink, SyncEvent
from ledgersync.services.orchestrator import SessionResult, SyncOrchestrator, get_orchestrator
from ledgersync.services.rate_limiter import AsyncTokenBucket
from ledgersync.services.staging_writer import StagingWriter, UpsertResult
from ledgersync.services.xero_client import Page, XeroClient

__all__ = [
    "AsyncTokenBucket",
    "AuditLogSink",
    "CheckpointClaim",
    "CheckpointState",
    "CheckpointStore",
    "EntitySyncResult",
    "EntitySyncWorker",
    "EventSink",
    "LoggingEventSink",
    "Page",
    "SessionResult",
    "StagingWriter",
    "SyncContext",
    "SyncEvent",
    "SyncOrchestrator",
    "UpsertResult",
    "WorkerState",
    "XeroClient",
    "get_orchestrator",
]
