"""Fetch-write-advance loop for a single entity type."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from ledgersync.config import get_settings
from ledgersync.entities import EntityType, get_entity_config
from ledgersync.exceptions import ConcurrentSyncConflict, SyncError
from ledgersync.models import EPOCH, CheckpointStatus, LogStatus
from ledgersync.services.checkpoint_store import CheckpointClaim, CheckpointStore
from ledgersync.services.context import SyncContext
from ledgersync.services.staging_writer import StagingWriter
from ledgersync.services.xero_client import XeroClient

logger = logging.getLogger(__name__)
settings = get_settings()


class WorkerState(StrEnum):
    IDLE = "idle"
    FETCHING = "fetching"
    WRITING = "writing"
    ADVANCING = "advancing"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class EntitySyncResult:
    """Counters and outcome of one entity sync, shaped like a SyncLog row."""

    entity_type: EntityType
    status: LogStatus = LogStatus.COMPLETED
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    duration_seconds: float = 0.0
    records_requested: int = 0
    records_received: int = 0
    records_processed: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_unchanged: int = 0
    records_failed: int = 0
    api_calls_made: int = 0
    rate_limit_hits: int = 0
    cursor_before: datetime | None = None
    cursor_after: datetime | None = None
    has_more_records: bool = False
    error: str | None = None
    error_type: str | None = None
    failures: list[dict[str, str | None]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == LogStatus.COMPLETED

    def error_details(self) -> dict[str, Any] | None:
        if self.error is None and not self.failures:
            return None
        return {
            "message": self.error,
            "error_type": self.error_type,
            "failures": self.failures,
        }


class EntitySyncWorker:
    """
    Syncs one entity type from its checkpoint cursor.

    State machine:
        idle -> fetching -> writing -> (fetching ...) -> advancing -> completed
    with error on any fetch/write failure, skipped when the checkpoint is held
    by another worker and cancelled when the session is cancelled between
    pages. Only completed and cancelled move the cursor.
    """

    def __init__(
        self,
        client: XeroClient,
        checkpoints: CheckpointStore,
        writer: StagingWriter,
        stale_after: timedelta = timedelta(minutes=settings.checkpoint_stale_minutes),
    ):
        self.client = client
        self.checkpoints = checkpoints
        self.writer = writer
        self.stale_after = stale_after
        self.state = WorkerState.IDLE

    def _finish(self, result: EntitySyncResult, status: LogStatus, started: float) -> EntitySyncResult:
        result.status = status
        result.completed_at = datetime.now(UTC)
        result.duration_seconds = time.monotonic() - started
        self.state = WorkerState(status.value)
        return result

    async def _release(
        self,
        claim: CheckpointClaim,
        result: EntitySyncResult,
        status: CheckpointStatus,
        new_cursor: datetime | None,
        started: float,
    ) -> bool:
        """Record the outcome on the checkpoint. Returns False if the claim was lost."""
        self.state = WorkerState.ADVANCING
        try:
            state = await self.checkpoints.advance(
                claim,
                status=status,
                new_cursor=new_cursor,
                records_processed=result.records_processed,
                rate_limit_hits=result.rate_limit_hits,
                has_more_records=result.has_more_records,
                error=result.error,
                duration_seconds=time.monotonic() - started,
            )
        except ConcurrentSyncConflict as e:
            logger.error(f"Lost checkpoint claim for {claim.entity_type}: {e}")
            result.error = str(e)
            result.error_type = type(e).__name__
            return False
        result.cursor_after = state.cursor
        return True

    async def run(
        self,
        entity_type: EntityType | str,
        context: SyncContext,
        session_id: str | None = None,
        force_full: bool = False,
    ) -> EntitySyncResult:
        """
        Sync one entity type and return its counters.

        Never raises for fetch or write failures; they are reported through
        the result status. force_full ignores the stored cursor and fetches
        from the epoch.
        """
        config = get_entity_config(entity_type)
        result = EntitySyncResult(entity_type=config.entity_type)
        started = time.monotonic()
        self.state = WorkerState.IDLE

        try:
            claim = await self.checkpoints.claim(config.entity_type, self.stale_after)
        except ConcurrentSyncConflict as e:
            logger.warning(f"Skipping {config.entity_type}: {e}")
            result.error = str(e)
            result.error_type = type(e).__name__
            return self._finish(result, LogStatus.SKIPPED, started)

        result.cursor_before = claim.cursor
        result.cursor_after = claim.cursor
        cursor = EPOCH if force_full else claim.cursor
        max_written: datetime | None = None
        page_token: str | None = None
        logger.info(f"Syncing {config.entity_type} since {cursor.isoformat()}")

        try:
            while True:
                self.state = WorkerState.FETCHING
                page = await self.client.fetch_page(config.entity_type, cursor, page_token, context)
                result.api_calls_made += page.api_calls
                result.rate_limit_hits += page.rate_limit_hits
                result.records_requested += config.page_size
                result.records_received += len(page.records)

                self.state = WorkerState.WRITING
                upserted = await self.writer.upsert(
                    config.entity_type, page.records, session_id, context
                )
                result.records_processed += len(page.records)
                result.records_inserted += upserted.inserted
                result.records_updated += upserted.updated
                result.records_unchanged += upserted.unchanged
                result.records_failed += upserted.failed
                result.failures.extend(upserted.failures)
                if upserted.max_updated_date_utc is not None and (
                    max_written is None or upserted.max_updated_date_utc > max_written
                ):
                    max_written = upserted.max_updated_date_utc

                page_token = page.next_page_token
                if page_token is None:
                    result.has_more_records = False
                    break
                if not result.has_more_records:
                    await self.checkpoints.mark_has_more(claim)
                    result.has_more_records = True
                if context.cancelled:
                    break

        except asyncio.CancelledError:
            result.error = "Sync task was cancelled"
            result.error_type = "CancelledError"
            await self._release(claim, result, CheckpointStatus.ERROR, None, started)
            self._finish(result, LogStatus.ERROR, started)
            raise

        except Exception as e:
            logger.error(f"Sync of {config.entity_type} failed: {e}", exc_info=True)
            if isinstance(e, SyncError):
                result.api_calls_made += e.api_calls
                result.rate_limit_hits += e.rate_limit_hits
            result.error = str(e)
            result.error_type = type(e).__name__
            result.has_more_records = page_token is not None
            await self._release(claim, result, CheckpointStatus.ERROR, None, started)
            return self._finish(result, LogStatus.ERROR, started)

        if page_token is not None:
            released = await self._release(claim, result, CheckpointStatus.IDLE, max_written, started)
            status = LogStatus.CANCELLED if released else LogStatus.ERROR
            logger.info(
                f"Sync of {config.entity_type} cancelled after {result.records_processed} records"
            )
            return self._finish(result, status, started)

        released = await self._release(claim, result, CheckpointStatus.COMPLETED, max_written, started)
        if not released:
            return self._finish(result, LogStatus.ERROR, started)

        logger.info(
            f"Synced {config.entity_type}: {result.records_processed} records, "
            f"cursor {result.cursor_after.isoformat() if result.cursor_after else None}"
        )
        return self._finish(result, LogStatus.COMPLETED, started)
