"""SyncCheckpoint model to track incremental sync progress per entity type."""

from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import Boolean, Float, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from ledgersync.database import Base, UTCDateTime

# Cursor value meaning "never synced": the next fetch is a full resync.
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class CheckpointStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class SyncCheckpoint(Base):
    """
    Durable cursor and health state for one entity type.

    Every write is a compare-and-set on (entity_type, status, claim_id);
    see CheckpointStore.
    """

    __tablename__ = "sync_checkpoints"

    entity_type: Mapped[str] = mapped_column(String(50), primary_key=True)
    cursor: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=EPOCH
    )
    has_more_records: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=CheckpointStatus.IDLE.value, nullable=False
    )
    claim_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    consecutive_error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rate_limit_hit_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_sync_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_duration_seconds: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_sync_started_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    last_sync_completed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    last_successful_sync_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<SyncCheckpoint {self.entity_type}: {self.status} @ {self.cursor}>"
