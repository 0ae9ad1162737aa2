"""Sync lifecycle events and the sinks that observe them."""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.models import SyncAuditEvent

logger = logging.getLogger(__name__)


class SyncEventType(StrEnum):
    SESSION_STARTED = "session_started"
    SESSION_REJECTED = "session_rejected"
    ENTITY_FINISHED = "entity_finished"
    SESSION_FINISHED = "session_finished"
    SESSION_CANCELLED = "session_cancelled"
    CHECKPOINT_RESET = "checkpoint_reset"


@dataclass
class SyncEvent:
    event_type: SyncEventType
    session_id: str | None = None
    entity_type: str | None = None
    actor: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventSink(Protocol):
    async def publish(self, event: SyncEvent) -> None: ...


class LoggingEventSink:
    """Writes every event to the application log."""

    async def publish(self, event: SyncEvent) -> None:
        scope = event.entity_type or event.session_id or "-"
        logger.info(f"Sync event {event.event_type} [{scope}] by {event.actor}: {event.details}")


class AuditLogSink:
    """Persists events to sync_audit_events."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def publish(self, event: SyncEvent) -> None:
        async with self.session_maker() as db:
            db.add(
                SyncAuditEvent(
                    event_type=event.event_type.value,
                    session_id=event.session_id,
                    entity_type=event.entity_type,
                    actor=event.actor,
                    details=event.details,
                    created_at=event.occurred_at,
                )
            )
            await db.commit()


async def publish_all(sinks: list[EventSink], event: SyncEvent) -> None:
    """Deliver an event to every sink; a failing sink never fails the sync."""
    for sink in sinks:
        try:
            await sink.publish(event)
        except Exception as e:
            logger.error(f"Event sink {type(sink).__name__} failed on {event.event_type}: {e}")
