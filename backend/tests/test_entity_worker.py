"""Tests for the per-entity sync worker."""

import asyncio
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from sqlalchemy import func, select

from conftest import xero_record
from ledgersync.entities import EntityType
from ledgersync.exceptions import RateLimited, TransientAPIError
from ledgersync.models import EPOCH, CheckpointStatus, LogStatus
from ledgersync.models.staged_record import StagedInvoice
from ledgersync.services.context import SyncContext
from ledgersync.services.entity_worker import EntitySyncWorker, WorkerState
from ledgersync.services.rate_limiter import AsyncTokenBucket
from ledgersync.services.xero_client import XeroClient

STALE_AFTER = timedelta(minutes=30)


def invoice_page(start: int, count: int, first: datetime, step: timedelta) -> list[dict]:
    return [
        xero_record(EntityType.INVOICES, f"inv-{start + i}", first + step * i, Total=i)
        for i in range(count)
    ]


@pytest.fixture
def worker(fake_client, checkpoint_store, staging_writer) -> EntitySyncWorker:
    return EntitySyncWorker(fake_client, checkpoint_store, staging_writer, stale_after=STALE_AFTER)


async def staged_invoices(session_maker) -> int:
    async with session_maker() as db:
        return await db.scalar(select(func.count(StagedInvoice.id)))


class TestEntitySyncWorker:
    """Tests for EntitySyncWorker.run."""

    @pytest.mark.asyncio
    async def test_incremental_sync_advances_to_newest_record(
        self, worker, fake_client, checkpoint_store, set_cursor, session_maker
    ):
        """Two pages of invoices move the cursor to the newest UpdatedDateUTC."""
        await set_cursor(EntityType.INVOICES, datetime(2024, 1, 1, tzinfo=UTC))
        newest = datetime(2024, 3, 15, 9, 0, tzinfo=UTC)
        page_one = invoice_page(0, 50, datetime(2024, 1, 2, tzinfo=UTC), timedelta(hours=6))
        page_two = invoice_page(50, 30, newest - timedelta(hours=29), timedelta(hours=1))
        fake_client.queue(EntityType.INVOICES, page_one, page_two)

        result = await worker.run(
            EntityType.INVOICES, context=SyncContext(timeout_seconds=60), session_id="s-1"
        )

        assert result.status == LogStatus.COMPLETED
        assert result.records_processed == 80
        assert result.records_inserted == 80
        assert result.records_requested == 200
        assert result.api_calls_made == 2
        assert result.cursor_before == datetime(2024, 1, 1, tzinfo=UTC)
        assert result.cursor_after == newest
        assert worker.state == WorkerState.COMPLETED

        assert fake_client.cursors_for(EntityType.INVOICES) == [datetime(2024, 1, 1, tzinfo=UTC)] * 2
        assert [token for _, _, token in fake_client.calls] == [None, "2"]

        state = await checkpoint_store.read(EntityType.INVOICES)
        assert state.cursor == newest
        assert state.status == CheckpointStatus.COMPLETED
        assert state.has_more_records is False
        assert await staged_invoices(session_maker) == 80

    @pytest.mark.asyncio
    async def test_failure_mid_run_keeps_cursor(
        self, worker, fake_client, checkpoint_store, set_cursor, session_maker
    ):
        """Page 1 stays staged but the cursor does not move past it."""
        cursor = datetime(2024, 1, 1, tzinfo=UTC)
        await set_cursor(EntityType.INVOICES, cursor)
        fake_client.queue(
            EntityType.INVOICES,
            invoice_page(0, 50, datetime(2024, 1, 5, tzinfo=UTC), timedelta(hours=1)),
            TransientAPIError("HTTP 503 after retries", status_code=503),
        )

        result = await worker.run(EntityType.INVOICES, context=SyncContext(timeout_seconds=60))

        assert result.status == LogStatus.ERROR
        assert result.error_type == "TransientAPIError"
        assert result.records_processed == 50
        assert result.cursor_after == cursor
        assert worker.state == WorkerState.ERROR

        state = await checkpoint_store.read(EntityType.INVOICES)
        assert state.status == CheckpointStatus.ERROR
        assert state.cursor == cursor
        assert state.consecutive_error_count == 1
        assert state.has_more_records is True
        assert await staged_invoices(session_maker) == 50

    @pytest.mark.asyncio
    async def test_rate_limit_exhaustion_counts_hits(self, worker, fake_client, checkpoint_store):
        fake_client.queue(EntityType.CONTACTS, RateLimited("Rate limited 6 times", hits=6))

        result = await worker.run(EntityType.CONTACTS, context=SyncContext(timeout_seconds=60))

        assert result.status == LogStatus.ERROR
        assert result.rate_limit_hits == 6
        state = await checkpoint_store.read(EntityType.CONTACTS)
        assert state.rate_limit_hit_count == 6

    @pytest.mark.asyncio
    async def test_reset_checkpoint_refetches_from_epoch(
        self, worker, fake_client, checkpoint_store, set_cursor
    ):
        await set_cursor(EntityType.CONTACTS, datetime(2024, 2, 1, tzinfo=UTC))
        await checkpoint_store.reset(EntityType.CONTACTS)

        await worker.run(EntityType.CONTACTS, context=SyncContext(timeout_seconds=60))

        assert fake_client.cursors_for(EntityType.CONTACTS) == [EPOCH]

    @pytest.mark.asyncio
    async def test_force_full_ignores_cursor(
        self, worker, fake_client, checkpoint_store, set_cursor
    ):
        """Re-fetched old records never pull the cursor backwards."""
        cursor = datetime(2024, 2, 1, tzinfo=UTC)
        await set_cursor(EntityType.ACCOUNTS, cursor)
        fake_client.queue(
            EntityType.ACCOUNTS,
            [xero_record(EntityType.ACCOUNTS, "acc-1", datetime(2023, 6, 1, tzinfo=UTC))],
        )

        result = await worker.run(
            EntityType.ACCOUNTS, context=SyncContext(timeout_seconds=60), force_full=True
        )

        assert fake_client.cursors_for(EntityType.ACCOUNTS) == [EPOCH]
        assert result.records_inserted == 1
        state = await checkpoint_store.read(EntityType.ACCOUNTS)
        assert state.cursor == cursor

    @pytest.mark.asyncio
    async def test_cancel_between_pages(self, worker, fake_client, checkpoint_store):
        """Cancellation keeps what was written and leaves more to fetch."""
        page_one_newest = datetime(2024, 1, 10, tzinfo=UTC)
        fake_client.queue(
            EntityType.INVOICES,
            invoice_page(0, 10, page_one_newest - timedelta(days=9), timedelta(days=1)),
            invoice_page(10, 10, datetime(2024, 2, 1, tzinfo=UTC), timedelta(days=1)),
        )
        context = SyncContext(timeout_seconds=60)

        async def cancel_on_first_page(entity, index, ctx):
            if index == 0:
                ctx.cancel()

        fake_client.before_fetch = cancel_on_first_page

        result = await worker.run(EntityType.INVOICES, context=context)

        assert result.status == LogStatus.CANCELLED
        assert result.records_processed == 10
        assert result.has_more_records is True
        assert len(fake_client.calls) == 1
        assert worker.state == WorkerState.CANCELLED

        state = await checkpoint_store.read(EntityType.INVOICES)
        assert state.status == CheckpointStatus.IDLE
        assert state.cursor == page_one_newest
        assert state.has_more_records is True
        assert state.claim_id is None

    @pytest.mark.asyncio
    async def test_task_cancellation_releases_claim(self, worker, fake_client, checkpoint_store):
        async def interrupt(entity, index, ctx):
            raise asyncio.CancelledError()

        fake_client.before_fetch = interrupt

        with pytest.raises(asyncio.CancelledError):
            await worker.run(EntityType.ITEMS, context=SyncContext(timeout_seconds=60))

        state = await checkpoint_store.read(EntityType.ITEMS)
        assert state.status == CheckpointStatus.ERROR
        assert state.claim_id is None
        assert state.cursor == EPOCH

    @pytest.mark.asyncio
    async def test_skips_entity_held_by_another_worker(self, worker, fake_client, checkpoint_store):
        await checkpoint_store.claim(EntityType.PAYMENTS, STALE_AFTER)

        result = await worker.run(EntityType.PAYMENTS, context=SyncContext(timeout_seconds=60))

        assert result.status == LogStatus.SKIPPED
        assert result.error_type == "ConcurrentSyncConflict"
        assert fake_client.calls == []
        assert worker.state == WorkerState.SKIPPED

    @pytest.mark.asyncio
    async def test_no_changes_completes_without_moving_cursor(
        self, worker, fake_client, checkpoint_store, set_cursor
    ):
        cursor = datetime(2024, 4, 1, tzinfo=UTC)
        await set_cursor(EntityType.MANUAL_JOURNALS, cursor)

        result = await worker.run(EntityType.MANUAL_JOURNALS, context=SyncContext(timeout_seconds=60))

        assert result.status == LogStatus.COMPLETED
        assert result.records_processed == 0
        assert result.api_calls_made == 1
        state = await checkpoint_store.read(EntityType.MANUAL_JOURNALS)
        assert state.cursor == cursor
        assert state.status == CheckpointStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_state_transitions(self, worker, fake_client):
        seen: list[WorkerState] = []

        async def record_state(entity, index, ctx):
            seen.append(worker.state)

        fake_client.before_fetch = record_state
        fake_client.queue(
            EntityType.CONTACTS,
            [xero_record(EntityType.CONTACTS, "c-1", datetime(2024, 1, 1, tzinfo=UTC))],
        )

        await worker.run(EntityType.CONTACTS, context=SyncContext(timeout_seconds=60))

        assert seen == [WorkerState.FETCHING]
        assert worker.state == WorkerState.COMPLETED

    @pytest.mark.asyncio
    async def test_has_more_records_set_while_paginating(
        self, worker, fake_client, checkpoint_store
    ):
        mid_run: list = []

        async def inspect_checkpoint(entity, index, ctx):
            if index == 1:
                mid_run.append(await checkpoint_store.read(EntityType.INVOICES))

        fake_client.before_fetch = inspect_checkpoint
        fake_client.queue(
            EntityType.INVOICES,
            invoice_page(0, 5, datetime(2024, 1, 1, tzinfo=UTC), timedelta(hours=1)),
            invoice_page(5, 5, datetime(2024, 1, 2, tzinfo=UTC), timedelta(hours=1)),
        )

        result = await worker.run(EntityType.INVOICES, context=SyncContext(timeout_seconds=60))

        assert mid_run[0].status == CheckpointStatus.RUNNING
        assert mid_run[0].has_more_records is True
        assert result.has_more_records is False
        state = await checkpoint_store.read(EntityType.INVOICES)
        assert state.has_more_records is False

    @pytest.mark.asyncio
    async def test_failed_fetch_counts_http_calls(self, checkpoint_store, staging_writer):
        """Requests spent on retries are still reported when the fetch gives up."""
        calls = 0

        def always_unavailable(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(503)

        async def no_sleep(seconds: float) -> None:
            pass

        client = XeroClient(
            base_url="https://api.test/api.xro/2.0",
            access_token="test_token",
            tenant_id="tenant-1",
            limiter=AsyncTokenBucket(rate=1_000_000.0),
            max_retries=3,
            transport=httpx.MockTransport(always_unavailable),
            sleep=no_sleep,
        )
        worker = EntitySyncWorker(client, checkpoint_store, staging_writer, stale_after=STALE_AFTER)

        result = await worker.run(EntityType.INVOICES, context=SyncContext(timeout_seconds=60))

        assert result.status == LogStatus.ERROR
        assert result.error_type == "TransientAPIError"
        assert calls == 4
        assert result.api_calls_made == 4

    @pytest.mark.asyncio
    async def test_deadline_during_staging_is_an_error(
        self, worker, fake_client, checkpoint_store, session_maker
    ):
        now = [0.0]
        context = SyncContext(timeout_seconds=60, clock=lambda: now[0])

        async def pass_deadline(entity, index, ctx):
            now[0] = 61.0

        fake_client.before_fetch = pass_deadline
        fake_client.queue(
            EntityType.INVOICES,
            invoice_page(0, 5, datetime(2024, 1, 1, tzinfo=UTC), timedelta(hours=1)),
        )

        result = await worker.run(EntityType.INVOICES, context=context)

        assert result.status == LogStatus.ERROR
        assert result.error_type == "SyncTimeout"
        assert result.records_inserted == 0
        state = await checkpoint_store.read(EntityType.INVOICES)
        assert state.status == CheckpointStatus.ERROR
        assert state.cursor == EPOCH
        assert await staged_invoices(session_maker) == 0
