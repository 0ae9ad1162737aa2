"""Idempotent upserts of fetched records into the per-entity staging tables."""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.entities import EntityConfig, EntityType, get_entity_config
from ledgersync.exceptions import MalformedRecord, SyncTimeout
from ledgersync.models import STAGING_MODELS, StagedRecordMixin
from ledgersync.services.context import SyncContext
from ledgersync.services.xero_client import parse_xero_datetime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedRecord:
    external_id: str
    updated_date_utc: datetime
    payload: dict[str, Any]
    payload_hash: str


@dataclass
class UpsertResult:
    """Outcome counts for one batch passed to StagingWriter.upsert."""

    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    max_updated_date_utc: datetime | None = None
    failures: list[dict[str, str | None]] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.inserted + self.updated + self.unchanged + self.failed

    def _observe(self, updated_date_utc: datetime) -> None:
        if self.max_updated_date_utc is None or updated_date_utc > self.max_updated_date_utc:
            self.max_updated_date_utc = updated_date_utc


def canonical_json(payload: dict[str, Any]) -> str:
    """Serialize with sorted keys and no whitespace so equal payloads hash equally."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def prepare_record(config: EntityConfig, record: Any) -> PreparedRecord:
    """Validate one raw API record, raising MalformedRecord if it cannot be staged."""
    if not isinstance(record, dict):
        raise MalformedRecord(f"Expected an object, got {type(record).__name__}")

    external_id = record.get(config.id_field)
    if not external_id or not isinstance(external_id, str):
        raise MalformedRecord(f"Missing {config.id_field}")

    raw_updated = record.get("UpdatedDateUTC")
    if raw_updated is None:
        raise MalformedRecord("Missing UpdatedDateUTC", external_id)
    try:
        updated_date_utc = parse_xero_datetime(raw_updated)
    except ValueError as e:
        raise MalformedRecord(f"Unparseable UpdatedDateUTC {raw_updated!r}", external_id) from e

    try:
        serialized = canonical_json(record)
    except (TypeError, ValueError) as e:
        raise MalformedRecord(f"Payload is not JSON-serialisable: {e}", external_id) from e

    return PreparedRecord(
        external_id=external_id,
        updated_date_utc=updated_date_utc,
        payload=json.loads(serialized),
        payload_hash=hashlib.sha256(serialized.encode("utf-8")).hexdigest(),
    )


class StagingWriter:
    """
    Writes pages of records to staging, one SAVEPOINT per record.

    A record that fails validation or its own write is counted as failed and
    the rest of the batch carries on. The batch commits once at the end.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def _write(
        self,
        db: AsyncSession,
        model: type[StagedRecordMixin],
        prepared: PreparedRecord,
        session_id: str | None,
    ) -> str:
        result = await db.execute(select(model).where(model.external_id == prepared.external_id))
        existing = result.scalar_one_or_none()
        now = datetime.now(UTC)

        if existing is None:
            db.add(
                model(
                    external_id=prepared.external_id,
                    updated_date_utc=prepared.updated_date_utc,
                    payload=prepared.payload,
                    payload_hash=prepared.payload_hash,
                    session_id=session_id,
                    created_at=now,
                    updated_at=now,
                )
            )
            await db.flush()
            return "inserted"

        if existing.payload_hash == prepared.payload_hash:
            return "unchanged"

        if prepared.updated_date_utc < existing.updated_date_utc:
            logger.debug(
                f"Ignoring stale version of {prepared.external_id} "
                f"({prepared.updated_date_utc} < {existing.updated_date_utc})"
            )
            return "unchanged"

        existing.updated_date_utc = prepared.updated_date_utc
        existing.payload = prepared.payload
        existing.payload_hash = prepared.payload_hash
        existing.session_id = session_id
        existing.updated_at = now
        await db.flush()
        return "updated"

    async def upsert(
        self,
        entity_type: EntityType | str,
        records: list[dict[str, Any]],
        session_id: str | None = None,
        context: SyncContext | None = None,
    ) -> UpsertResult:
        """
        Stage a batch of records for one entity type.

        Args:
            entity_type: Which staging table to write
            records: Raw API records
            session_id: Session that fetched them, kept on the staged row
            context: Session deadline; the whole batch, commit included,
                must finish before it or SyncTimeout is raised and nothing
                from the batch is kept

        Returns:
            UpsertResult with per-outcome counts and the newest
            UpdatedDateUTC among records that were not failed
        """
        config = get_entity_config(entity_type)
        model = STAGING_MODELS[config.entity_type]
        result = UpsertResult()

        if not records:
            return result

        remaining = context.remaining() if context is not None else None
        try:
            async with asyncio.timeout(remaining):
                async with self.session_maker() as db:
                    for record in records:
                        if context is not None:
                            context.raise_if_expired()
                        await self._stage_one(db, config, model, record, session_id, result)
                    await db.commit()
        except TimeoutError as e:
            raise SyncTimeout(
                f"Staging {config.entity_type} did not finish before the sync deadline"
            ) from e

        logger.info(
            f"Staged {config.entity_type}: {result.inserted} inserted, "
            f"{result.updated} updated, {result.unchanged} unchanged, {result.failed} failed"
        )
        return result

    async def _stage_one(
        self,
        db: AsyncSession,
        config: EntityConfig,
        model: type[StagedRecordMixin],
        record: Any,
        session_id: str | None,
        result: UpsertResult,
    ) -> None:
        try:
            prepared = prepare_record(config, record)
        except MalformedRecord as e:
            logger.warning(f"Skipping malformed {config.entity_type} record: {e}")
            result.failed += 1
            result.failures.append({"external_id": e.external_id, "error": str(e)})
            return

        try:
            async with db.begin_nested():
                outcome = await self._write(db, model, prepared, session_id)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to stage {config.entity_type} {prepared.external_id}: {e}")
            result.failed += 1
            result.failures.append({"external_id": prepared.external_id, "error": str(e)})
            return

        if outcome == "inserted":
            result.inserted += 1
        elif outcome == "updated":
            result.updated += 1
        else:
            result.unchanged += 1
        result._observe(prepared.updated_date_utc)
