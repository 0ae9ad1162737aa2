"""
Durable per-entity cursor and health state.

All writes go through compare-and-set: an UPDATE constrained on the status
(and, while running, the claim id) the caller last observed. A rowcount of
zero means someone else got there first and ConcurrentSyncConflict is raised
instead of overwriting their state.
"""

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.entities import ALL_ENTITY_TYPES, EntityType, parse_entity_types
from ledgersync.exceptions import ConcurrentSyncConflict
from ledgersync.models import EPOCH, CheckpointStatus, SyncCheckpoint

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class CheckpointState:
    """Detached snapshot of a checkpoint row."""

    entity_type: str
    cursor: datetime
    has_more_records: bool
    status: CheckpointStatus
    claim_id: str | None
    error_message: str | None
    consecutive_error_count: int
    rate_limit_hit_count: int
    records_processed: int
    total_sync_count: int
    average_duration_seconds: float
    last_sync_started_at: datetime | None
    last_sync_completed_at: datetime | None
    last_successful_sync_at: datetime | None

    @classmethod
    def from_row(cls, row: SyncCheckpoint) -> "CheckpointState":
        return cls(
            entity_type=row.entity_type,
            cursor=row.cursor,
            has_more_records=row.has_more_records,
            status=CheckpointStatus(row.status),
            claim_id=row.claim_id,
            error_message=row.error_message,
            consecutive_error_count=row.consecutive_error_count,
            rate_limit_hit_count=row.rate_limit_hit_count,
            records_processed=row.records_processed,
            total_sync_count=row.total_sync_count,
            average_duration_seconds=row.average_duration_seconds,
            last_sync_started_at=row.last_sync_started_at,
            last_sync_completed_at=row.last_sync_completed_at,
            last_successful_sync_at=row.last_successful_sync_at,
        )

    @classmethod
    def never_synced(cls, entity_type: str) -> "CheckpointState":
        """State of an entity type whose checkpoint row has not been created."""
        return cls(
            entity_type=entity_type,
            cursor=EPOCH,
            has_more_records=False,
            status=CheckpointStatus.IDLE,
            claim_id=None,
            error_message=None,
            consecutive_error_count=0,
            rate_limit_hit_count=0,
            records_processed=0,
            total_sync_count=0,
            average_duration_seconds=0.0,
            last_sync_started_at=None,
            last_sync_completed_at=None,
            last_successful_sync_at=None,
        )


def cover_all_entities(states: Iterable[CheckpointState]) -> list[CheckpointState]:
    """Fill in never-synced states for missing entity types, sorted by entity type."""
    by_type = {state.entity_type: state for state in states}
    for entity_type in ALL_ENTITY_TYPES:
        by_type.setdefault(str(entity_type), CheckpointState.never_synced(str(entity_type)))
    return sorted(by_type.values(), key=lambda state: state.entity_type)


@dataclass(frozen=True)
class CheckpointClaim:
    """Proof that a worker moved a checkpoint to running."""

    entity_type: str
    claim_id: str
    cursor: datetime
    started_at: datetime
    previous_status: CheckpointStatus
    recovered_orphan: bool = False


class CheckpointStore:
    """Reads and compare-and-set writes of sync_checkpoints rows."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_maker = session_maker
        self.clock = clock

    async def _get_or_create(self, db: AsyncSession, entity_type: str) -> SyncCheckpoint:
        result = await db.execute(
            select(SyncCheckpoint).where(SyncCheckpoint.entity_type == entity_type)
        )
        row = result.scalar_one_or_none()
        if row is not None:
            return row

        row = SyncCheckpoint(
            entity_type=entity_type,
            cursor=EPOCH,
            has_more_records=False,
            status=CheckpointStatus.IDLE.value,
            consecutive_error_count=0,
            rate_limit_hit_count=0,
            records_processed=0,
            total_sync_count=0,
            average_duration_seconds=0.0,
            updated_at=self.clock(),
        )
        try:
            async with db.begin_nested():
                db.add(row)
        except IntegrityError:
            # Another caller created it between our SELECT and INSERT
            result = await db.execute(
                select(SyncCheckpoint).where(SyncCheckpoint.entity_type == entity_type)
            )
            row = result.scalar_one()
        return row

    async def read(self, entity_type: EntityType | str) -> CheckpointState:
        """Return the checkpoint, creating an idle row at the epoch if absent."""
        entity_type = str(parse_entity_types([entity_type])[0])
        async with self.session_maker() as db:
            row = await self._get_or_create(db, entity_type)
            await db.commit()
            return CheckpointState.from_row(row)

    async def initialize_all(
        self, entity_types: Iterable[EntityType | str] = ALL_ENTITY_TYPES
    ) -> list[CheckpointState]:
        """Seed one idle checkpoint per entity type, leaving existing rows alone."""
        states = [await self.read(entity_type) for entity_type in entity_types]
        logger.info(f"Initialized {len(states)} sync checkpoints")
        return states

    async def list_all(self) -> list[CheckpointState]:
        """Every entity type's checkpoint; types without a row yet read as never synced."""
        async with self.session_maker() as db:
            result = await db.execute(select(SyncCheckpoint))
            return cover_all_entities(CheckpointState.from_row(row) for row in result.scalars())

    async def mark_has_more(self, claim: CheckpointClaim) -> None:
        """Flag that the claimed sync is part way through a paginated fetch."""
        async with self.session_maker() as db:
            result = await db.execute(
                update(SyncCheckpoint)
                .where(
                    SyncCheckpoint.entity_type == claim.entity_type,
                    SyncCheckpoint.status == CheckpointStatus.RUNNING.value,
                    SyncCheckpoint.claim_id == claim.claim_id,
                )
                .values(has_more_records=True, updated_at=self.clock())
            )
            await db.commit()

        if result.rowcount != 1:
            raise ConcurrentSyncConflict(claim.entity_type, CheckpointStatus.RUNNING.value)

    async def claim(
        self, entity_type: EntityType | str, stale_after: timedelta
    ) -> CheckpointClaim:
        """
        Move a checkpoint to running for the calling worker.

        A row already running for longer than stale_after is assumed to be
        left over from a crashed worker and is taken over; a fresher one
        raises ConcurrentSyncConflict.
        """
        state = await self.read(entity_type)
        now = self.clock()
        recovered = False

        conditions = [
            SyncCheckpoint.entity_type == state.entity_type,
            SyncCheckpoint.status == state.status.value,
        ]
        if state.status == CheckpointStatus.RUNNING:
            started = state.last_sync_started_at
            if started is not None and now - started < stale_after:
                raise ConcurrentSyncConflict(state.entity_type, CheckpointStatus.IDLE.value)

            logger.warning(
                f"Recovering orphaned checkpoint for {state.entity_type} "
                f"(running since {started})"
            )
            recovered = True
            # Pin the exact orphan we observed so two recoverers cannot both win
            conditions.append(
                SyncCheckpoint.claim_id == state.claim_id
                if state.claim_id is not None
                else SyncCheckpoint.claim_id.is_(None)
            )

        claim_id = str(uuid.uuid4())
        async with self.session_maker() as db:
            result = await db.execute(
                update(SyncCheckpoint)
                .where(*conditions)
                .values(
                    status=CheckpointStatus.RUNNING.value,
                    claim_id=claim_id,
                    last_sync_started_at=now,
                    updated_at=now,
                )
            )
            await db.commit()

        if result.rowcount != 1:
            raise ConcurrentSyncConflict(state.entity_type, state.status.value)

        return CheckpointClaim(
            entity_type=state.entity_type,
            claim_id=claim_id,
            cursor=state.cursor,
            started_at=now,
            previous_status=state.status,
            recovered_orphan=recovered,
        )

    async def advance(
        self,
        claim: CheckpointClaim,
        *,
        status: CheckpointStatus,
        new_cursor: datetime | None = None,
        records_processed: int = 0,
        rate_limit_hits: int = 0,
        has_more_records: bool = False,
        error: str | None = None,
        duration_seconds: float = 0.0,
    ) -> CheckpointState:
        """
        Release a claim, recording the outcome of the sync attempt.

        status is COMPLETED, ERROR, or IDLE (stopped early by cancellation).
        The cursor only ever moves forward: max(stored, new_cursor).
        """
        if status == CheckpointStatus.RUNNING:
            raise ValueError("advance() must leave the running state")

        now = self.clock()
        async with self.session_maker() as db:
            result = await db.execute(
                select(SyncCheckpoint)
                .where(SyncCheckpoint.entity_type == claim.entity_type)
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None or row.claim_id != claim.claim_id:
                raise ConcurrentSyncConflict(claim.entity_type, CheckpointStatus.RUNNING.value)

            cursor = row.cursor
            if new_cursor is not None and new_cursor > cursor:
                cursor = new_cursor

            if status == CheckpointStatus.COMPLETED:
                consecutive_errors = 0
            elif status == CheckpointStatus.ERROR:
                consecutive_errors = row.consecutive_error_count + 1
            else:
                consecutive_errors = row.consecutive_error_count

            total = row.total_sync_count
            average = (row.average_duration_seconds * total + duration_seconds) / (total + 1)

            values = {
                "status": status.value,
                "claim_id": None,
                "cursor": cursor,
                "has_more_records": has_more_records,
                "error_message": error,
                "consecutive_error_count": consecutive_errors,
                "rate_limit_hit_count": row.rate_limit_hit_count + rate_limit_hits,
                "records_processed": row.records_processed + records_processed,
                "total_sync_count": total + 1,
                "average_duration_seconds": average,
                "last_sync_completed_at": now,
                "updated_at": now,
            }
            if status == CheckpointStatus.COMPLETED:
                values["last_successful_sync_at"] = now

            update_result = await db.execute(
                update(SyncCheckpoint)
                .where(
                    SyncCheckpoint.entity_type == claim.entity_type,
                    SyncCheckpoint.status == CheckpointStatus.RUNNING.value,
                    SyncCheckpoint.claim_id == claim.claim_id,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if update_result.rowcount != 1:
                await db.rollback()
                raise ConcurrentSyncConflict(claim.entity_type, CheckpointStatus.RUNNING.value)

            await db.commit()

        return await self.read(claim.entity_type)

    async def reset(self, entity_type: EntityType | str) -> CheckpointState:
        """
        Force the next sync of entity_type to be a full resync.

        Refused with ConcurrentSyncConflict while a worker holds the row.
        """
        state = await self.read(entity_type)
        if state.status == CheckpointStatus.RUNNING:
            raise ConcurrentSyncConflict(state.entity_type, CheckpointStatus.IDLE.value)

        now = self.clock()
        async with self.session_maker() as db:
            result = await db.execute(
                update(SyncCheckpoint)
                .where(
                    SyncCheckpoint.entity_type == state.entity_type,
                    SyncCheckpoint.status == state.status.value,
                    SyncCheckpoint.claim_id.is_(None),
                )
                .values(
                    cursor=EPOCH,
                    status=CheckpointStatus.IDLE.value,
                    has_more_records=False,
                    error_message=None,
                    consecutive_error_count=0,
                    rate_limit_hit_count=0,
                    last_successful_sync_at=None,
                    updated_at=now,
                )
            )
            await db.commit()

        if result.rowcount != 1:
            raise ConcurrentSyncConflict(state.entity_type, state.status.value)

        logger.info(f"Checkpoint reset for {state.entity_type}; next sync is a full resync")
        return await self.read(state.entity_type)
