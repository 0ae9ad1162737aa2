"""Sync session and per-tenant session lease models."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import JSON, Float, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from ledgersync.database import Base, UTCDateTime


class SessionType(StrEnum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    INITIAL = "initial"


class SessionScope(StrEnum):
    FULL = "full"
    INCREMENTAL = "incremental"
    ENTITY_SPECIFIC = "entity_specific"


class SessionStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class SyncSession(Base):
    """One end-to-end invocation of the sync engine."""

    __tablename__ = "sync_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_type: Mapped[str] = mapped_column(String(20), nullable=False)
    scope: Mapped[str] = mapped_column(String(20), nullable=False)
    target_entities: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(
        String(20), default=SessionStatus.RUNNING.value, nullable=False, index=True
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    initiated_by: Mapped[str] = mapped_column(String(255), nullable=False)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    total_duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_records_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_api_calls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    success_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<SyncSession {self.id}: {self.status}>"


class SyncSessionLease(Base):
    """
    Grants one tenant the right to run a single session at a time.

    Acquired by a conditional UPDATE in the same transaction that inserts
    the SyncSession row.
    """

    __tablename__ = "sync_session_leases"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    acquired_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )

    def __repr__(self) -> str:
        return f"<SyncSessionLease {self.tenant_id}: {self.session_id}>"
