"""
Session orchestration: one tenant-wide lease, entities run in priority order.

The orchestrator is also the inbound trigger surface used by the HTTP routes
and the daily scheduler.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from functools import lru_cache

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.config import get_settings
from ledgersync.entities import ALL_ENTITY_TYPES, EntityType, order_by_priority
from ledgersync.exceptions import SessionAlreadyRunning, SessionNotFound
from ledgersync.models import (
    LogStatus,
    SessionScope,
    SessionStatus,
    SessionType,
    SyncLog,
    SyncSession,
    SyncSessionLease,
)
from ledgersync.services.checkpoint_store import CheckpointState, CheckpointStore
from ledgersync.services.context import SyncContext
from ledgersync.services.entity_worker import EntitySyncResult, EntitySyncWorker
from ledgersync.services.events import (
    AuditLogSink,
    EventSink,
    LoggingEventSink,
    SyncEvent,
    SyncEventType,
    publish_all,
)
from ledgersync.services.staging_writer import StagingWriter
from ledgersync.services.xero_client import XeroClient

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class SessionResult:
    """Aggregate outcome of one sync session."""

    session_id: str
    status: SessionStatus
    scope: SessionScope
    session_type: SessionType
    target_entities: list[str]
    started_at: datetime
    completed_at: datetime
    duration_seconds: float
    entity_results: list[EntitySyncResult] = field(default_factory=list)

    @property
    def total_records_processed(self) -> int:
        return sum(result.records_processed for result in self.entity_results)

    @property
    def total_api_calls(self) -> int:
        return sum(result.api_calls_made for result in self.entity_results)

    @property
    def failed_entities(self) -> list[str]:
        return [
            str(result.entity_type)
            for result in self.entity_results
            if result.status == LogStatus.ERROR
        ]

    @property
    def success_rate(self) -> float:
        if not self.entity_results:
            return 0.0
        completed = sum(1 for result in self.entity_results if result.succeeded)
        return round(completed / len(self.entity_results) * 100, 2)

    @property
    def message(self) -> str:
        failed = len(self.failed_entities)
        total = len(self.target_entities)
        if failed:
            return f"{failed} of {total} entities failed, see log {self.session_id}"
        if self.status == SessionStatus.CANCELLED:
            return f"Sync cancelled, see log {self.session_id}"
        return f"Synced {total} entities ({self.total_records_processed} records)"


@dataclass
class OpenSession:
    """A session whose lease is held and whose row is running."""

    session_id: str
    scope: SessionScope
    session_type: SessionType
    targets: list[EntityType]
    initiated_by: str
    force_full: bool
    started_at: datetime
    context: SyncContext
    started_monotonic: float = field(default_factory=time.monotonic)


class SyncOrchestrator:
    """
    Runs sync sessions for one tenant.

    Only one session per tenant may run at a time. The guard is a
    compare-and-set on the tenant's sync_session_leases row, made in the same
    transaction that inserts the session, so a rejected trigger leaves no
    session row behind.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        client: XeroClient | None = None,
        tenant_id: str = settings.xero_tenant_id,
        sinks: list[EventSink] | None = None,
        sync_timeout: timedelta = timedelta(minutes=settings.sync_timeout_minutes),
        session_freshness: timedelta = timedelta(minutes=settings.session_freshness_minutes),
        checkpoint_stale_after: timedelta = timedelta(minutes=settings.checkpoint_stale_minutes),
    ):
        self.session_maker = session_maker
        self.client = client or XeroClient(tenant_id=tenant_id)
        self.tenant_id = tenant_id
        self.sinks: list[EventSink] = list(sinks or [])
        self.sync_timeout = sync_timeout
        self.session_freshness = session_freshness
        self.checkpoints = CheckpointStore(session_maker)
        self.writer = StagingWriter(session_maker)
        self.worker = EntitySyncWorker(
            self.client, self.checkpoints, self.writer, stale_after=checkpoint_stale_after
        )
        self._contexts: dict[str, SyncContext] = {}
        self._tasks: set[asyncio.Task] = set()

    async def _publish(self, event: SyncEvent) -> None:
        await publish_all(self.sinks, event)

    # ------------------------------------------------------------------
    # Lease handling
    # ------------------------------------------------------------------

    async def _open_session(
        self,
        session_id: str,
        scope: SessionScope,
        session_type: SessionType,
        targets: list[EntityType],
        initiated_by: str,
        now: datetime,
    ) -> None:
        """Acquire the tenant lease and insert the session row atomically."""
        async with self.session_maker() as db:
            previous = await db.get(SyncSessionLease, self.tenant_id)
            previous_session_id = previous.session_id if previous else None

            result = await db.execute(
                update(SyncSessionLease)
                .where(
                    SyncSessionLease.tenant_id == self.tenant_id,
                    or_(
                        SyncSessionLease.session_id.is_(None),
                        SyncSessionLease.acquired_at < now - self.session_freshness,
                    ),
                )
                .values(session_id=session_id, acquired_at=now)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 0:
                if previous is not None:
                    await db.rollback()
                    raise SessionAlreadyRunning(self.tenant_id, previous_session_id)
                db.add(
                    SyncSessionLease(
                        tenant_id=self.tenant_id, session_id=session_id, acquired_at=now
                    )
                )
                try:
                    await db.flush()
                except IntegrityError as e:
                    await db.rollback()
                    raise SessionAlreadyRunning(self.tenant_id) from e
                previous_session_id = None

            if previous_session_id and previous_session_id != session_id:
                # The lease expired without being released; close out its session
                logger.warning(f"Taking over expired lease from session {previous_session_id}")
                await db.execute(
                    update(SyncSession)
                    .where(
                        SyncSession.id == previous_session_id,
                        SyncSession.status == SessionStatus.RUNNING.value,
                    )
                    .values(
                        status=SessionStatus.ERROR.value,
                        completed_at=now,
                        error_summary="Session abandoned: lease expired",
                    )
                )

            db.add(
                SyncSession(
                    id=session_id,
                    session_type=session_type.value,
                    scope=scope.value,
                    target_entities=[str(entity) for entity in targets],
                    status=SessionStatus.RUNNING.value,
                    tenant_id=self.tenant_id,
                    initiated_by=initiated_by,
                    started_at=now,
                    total_records_processed=0,
                    total_api_calls=0,
                    created_at=now,
                )
            )
            await db.commit()

    async def _release_lease(self, db: AsyncSession, session_id: str) -> None:
        await db.execute(
            update(SyncSessionLease)
            .where(
                SyncSessionLease.tenant_id == self.tenant_id,
                SyncSessionLease.session_id == session_id,
            )
            .values(session_id=None, acquired_at=None)
        )

    # ------------------------------------------------------------------
    # Session execution
    # ------------------------------------------------------------------

    async def _write_log(self, session_id: str, result: EntitySyncResult) -> None:
        async with self.session_maker() as db:
            db.add(
                SyncLog(
                    session_id=session_id,
                    entity_type=str(result.entity_type),
                    status=result.status.value,
                    started_at=result.started_at,
                    completed_at=result.completed_at or datetime.now(UTC),
                    duration_seconds=result.duration_seconds,
                    records_requested=result.records_requested,
                    records_received=result.records_received,
                    records_processed=result.records_processed,
                    records_inserted=result.records_inserted,
                    records_updated=result.records_updated,
                    records_unchanged=result.records_unchanged,
                    records_failed=result.records_failed,
                    api_calls_made=result.api_calls_made,
                    rate_limit_hits=result.rate_limit_hits,
                    error_details=result.error_details(),
                )
            )
            await db.commit()

    async def _cancelled_elsewhere(self, session_id: str) -> bool:
        async with self.session_maker() as db:
            status = await db.scalar(select(SyncSession.status).where(SyncSession.id == session_id))
        return status == SessionStatus.CANCELLED.value

    async def _run_entity(
        self,
        entity_type: EntityType,
        context: SyncContext,
        session_id: str,
        force_full: bool,
    ) -> EntitySyncResult:
        try:
            return await self.worker.run(entity_type, context, session_id, force_full)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected failure syncing {entity_type}: {e}", exc_info=True)
            now = datetime.now(UTC)
            return EntitySyncResult(
                entity_type=entity_type,
                status=LogStatus.ERROR,
                started_at=now,
                completed_at=now,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def start_session(
        self,
        scope: SessionScope,
        target_entities: Iterable[EntityType | str],
        initiated_by: str,
        session_type: SessionType = SessionType.MANUAL,
        force_full: bool = False,
    ) -> OpenSession:
        """
        Acquire the tenant lease and record a running session.

        Raises:
            InvalidEntityType: a target is not a known entity type
            SessionAlreadyRunning: the tenant already has a fresh session
        """
        targets = order_by_priority(target_entities)
        if not targets:
            raise ValueError("At least one entity type is required")

        opened = OpenSession(
            session_id=str(uuid.uuid4()),
            scope=scope,
            session_type=session_type,
            targets=targets,
            initiated_by=initiated_by,
            force_full=force_full,
            started_at=datetime.now(UTC),
            context=SyncContext(timeout_seconds=self.sync_timeout.total_seconds()),
        )

        try:
            await self._open_session(
                opened.session_id, scope, session_type, targets, initiated_by, opened.started_at
            )
        except SessionAlreadyRunning as e:
            await self._publish(
                SyncEvent(
                    SyncEventType.SESSION_REJECTED,
                    session_id=e.session_id,
                    actor=initiated_by,
                    details={"reason": str(e), "scope": scope.value},
                )
            )
            raise

        self._contexts[opened.session_id] = opened.context
        logger.info(
            f"Sync session {opened.session_id} started by {initiated_by}: "
            f"{scope.value} ({', '.join(targets)})"
        )
        await self._publish(
            SyncEvent(
                SyncEventType.SESSION_STARTED,
                session_id=opened.session_id,
                actor=initiated_by,
                details={
                    "scope": scope.value,
                    "session_type": session_type.value,
                    "target_entities": [str(entity) for entity in targets],
                    "force_full": force_full,
                },
            )
        )
        return opened

    async def execute(self, opened: OpenSession) -> SessionResult:
        """Run every target entity of an opened session, then close it."""
        session_id = opened.session_id
        context = opened.context
        results: list[EntitySyncResult] = []
        try:
            for entity_type in opened.targets:
                if not context.cancelled and await self._cancelled_elsewhere(session_id):
                    context.cancel()

                if context.cancelled:
                    now = datetime.now(UTC)
                    result = EntitySyncResult(
                        entity_type=entity_type,
                        status=LogStatus.CANCELLED,
                        started_at=now,
                        completed_at=now,
                    )
                else:
                    result = await self._run_entity(
                        entity_type, context, session_id, opened.force_full
                    )

                await self._write_log(session_id, result)
                results.append(result)
                await self._publish(
                    SyncEvent(
                        SyncEventType.ENTITY_FINISHED,
                        session_id=session_id,
                        entity_type=str(entity_type),
                        actor=opened.initiated_by,
                        details={
                            "status": result.status.value,
                            "records_processed": result.records_processed,
                            "rate_limit_hits": result.rate_limit_hits,
                            "error": result.error,
                        },
                    )
                )
        finally:
            self._contexts.pop(session_id, None)
            session_result = await self._close_session(opened, results)

        await self._publish(
            SyncEvent(
                SyncEventType.SESSION_FINISHED,
                session_id=session_id,
                actor=opened.initiated_by,
                details={
                    "status": session_result.status.value,
                    "success_rate": session_result.success_rate,
                    "total_records_processed": session_result.total_records_processed,
                    "message": session_result.message,
                },
            )
        )
        logger.info(f"Sync session {session_id} {session_result.status}: {session_result.message}")
        return session_result

    async def run_session(
        self,
        scope: SessionScope,
        target_entities: Iterable[EntityType | str],
        initiated_by: str,
        session_type: SessionType = SessionType.MANUAL,
        force_full: bool = False,
    ) -> SessionResult:
        """Open a session and run it to completion."""
        opened = await self.start_session(
            scope, target_entities, initiated_by, session_type, force_full
        )
        return await self.execute(opened)

    async def launch_session(
        self,
        scope: SessionScope,
        target_entities: Iterable[EntityType | str],
        initiated_by: str,
        session_type: SessionType = SessionType.MANUAL,
        force_full: bool = False,
    ) -> OpenSession:
        """
        Open a session and run it in the background.

        Lease conflicts and invalid targets still raise here, before any
        work is scheduled.
        """
        opened = await self.start_session(
            scope, target_entities, initiated_by, session_type, force_full
        )
        task = asyncio.create_task(self.execute(opened), name=f"sync-{opened.session_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return opened

    async def shutdown(self) -> None:
        """Cancel in-process sessions and wait for them to close."""
        for context in self._contexts.values():
            context.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _close_session(
        self, opened: OpenSession, results: list[EntitySyncResult]
    ) -> SessionResult:
        session_id = opened.session_id
        targets = opened.targets
        duration = time.monotonic() - opened.started_monotonic
        cancelled = opened.context.cancelled

        failed = [result for result in results if result.status == LogStatus.ERROR]
        if failed or len(results) < len(targets):
            status = SessionStatus.ERROR
        elif cancelled:
            status = SessionStatus.CANCELLED
        else:
            status = SessionStatus.COMPLETED

        session_result = SessionResult(
            session_id=session_id,
            status=status,
            scope=opened.scope,
            session_type=opened.session_type,
            target_entities=[str(entity) for entity in targets],
            started_at=opened.started_at,
            completed_at=datetime.now(UTC),
            duration_seconds=duration,
            entity_results=results,
        )

        error_summary = None
        if failed:
            error_summary = "; ".join(f"{r.entity_type}: {r.error}" for r in failed)
        elif len(results) < len(targets):
            error_summary = "Session interrupted before all entities ran"

        async with self.session_maker() as db:
            await db.execute(
                update(SyncSession)
                .where(SyncSession.id == session_id)
                .values(
                    status=status.value,
                    completed_at=session_result.completed_at,
                    total_duration_seconds=duration,
                    total_records_processed=session_result.total_records_processed,
                    total_api_calls=session_result.total_api_calls,
                    success_rate=session_result.success_rate,
                    error_summary=error_summary,
                )
            )
            await self._release_lease(db, session_id)
            await db.commit()

        return session_result

    # ------------------------------------------------------------------
    # Trigger surface
    # ------------------------------------------------------------------

    async def trigger_full_sync(
        self, initiated_by: str, session_type: SessionType | str = SessionType.MANUAL
    ) -> SessionResult:
        """Incrementally sync every entity type."""
        return await self.run_session(
            SessionScope.FULL,
            ALL_ENTITY_TYPES,
            initiated_by,
            session_type=SessionType(session_type),
        )

    async def trigger_entity_sync(
        self,
        entity_types: Iterable[EntityType | str],
        initiated_by: str,
        force_full: bool = False,
    ) -> SessionResult:
        """Sync selected entity types, optionally ignoring their cursors."""
        return await self.run_session(
            SessionScope.ENTITY_SPECIFIC,
            entity_types,
            initiated_by,
            session_type=SessionType.MANUAL,
            force_full=force_full,
        )

    async def cancel_session(self, session_id: str, actor: str | None = None) -> SyncSession:
        """
        Ask a running session to stop.

        A session running in this process stops after its in-flight page and
        closes itself. A running row with no live owner here is closed
        immediately and its lease released. Finished sessions are returned
        unchanged.
        """
        now = datetime.now(UTC)
        context = self._contexts.get(session_id)

        async with self.session_maker() as db:
            session = await db.get(SyncSession, session_id)
            if session is None:
                raise SessionNotFound(f"Sync session {session_id} not found")

            if session.status != SessionStatus.RUNNING.value:
                logger.info(f"Session {session_id} is already {session.status}")
                return session

            values: dict = {"status": SessionStatus.CANCELLED.value}
            if context is None:
                values.update(completed_at=now, error_summary="Cancelled by operator")
            result = await db.execute(
                update(SyncSession)
                .where(
                    SyncSession.id == session_id,
                    SyncSession.status == SessionStatus.RUNNING.value,
                )
                .values(**values)
            )
            if context is None:
                await self._release_lease(db, session_id)
            await db.commit()

            if result.rowcount == 1 and context is not None:
                context.cancel()

            await db.refresh(session)

        logger.info(f"Session {session_id} cancellation requested by {actor}")
        await self._publish(
            SyncEvent(
                SyncEventType.SESSION_CANCELLED,
                session_id=session_id,
                actor=actor,
                details={"in_process": context is not None},
            )
        )
        return session

    async def reset_checkpoint(
        self, entity_type: EntityType | str, actor: str | None = None
    ) -> CheckpointState:
        """Rewind an entity's cursor to the epoch so its next sync is a full resync."""
        state = await self.checkpoints.reset(entity_type)
        await self._publish(
            SyncEvent(
                SyncEventType.CHECKPOINT_RESET,
                entity_type=state.entity_type,
                actor=actor,
            )
        )
        return state

    async def get_session(self, session_id: str) -> SyncSession:
        async with self.session_maker() as db:
            session = await db.get(SyncSession, session_id)
        if session is None:
            raise SessionNotFound(f"Sync session {session_id} not found")
        return session

    async def get_session_logs(self, session_id: str) -> list[SyncLog]:
        await self.get_session(session_id)
        async with self.session_maker() as db:
            result = await db.execute(
                select(SyncLog)
                .where(SyncLog.session_id == session_id)
                .order_by(SyncLog.started_at, SyncLog.id)
            )
            return list(result.scalars())

    async def list_recent_sessions(self, limit: int = 20) -> list[SyncSession]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(SyncSession).order_by(SyncSession.started_at.desc()).limit(limit)
            )
            return list(result.scalars())


@lru_cache
def get_orchestrator() -> SyncOrchestrator:
    """Process-wide orchestrator shared by the HTTP routes and the scheduler."""
    from ledgersync.database import async_session_maker

    return SyncOrchestrator(
        async_session_maker,
        sinks=[LoggingEventSink(), AuditLogSink(async_session_maker)],
    )
