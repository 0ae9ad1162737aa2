"""Tests for the daily sync scheduler."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from ledgersync.exceptions import SessionAlreadyRunning
from ledgersync.models import SessionType
from ledgersync.tasks import scheduler as scheduler_module
from ledgersync.tasks.scheduler import daily_sync_job, setup_scheduler, shutdown_scheduler


class TestDailySyncJob:
    """Tests for the scheduled job body."""

    @pytest.mark.asyncio
    async def test_triggers_scheduled_full_sync(self):
        orchestrator = MagicMock()
        orchestrator.trigger_full_sync = AsyncMock(
            return_value=MagicMock(status="completed", message="Synced 10 entities (0 records)")
        )

        await daily_sync_job(orchestrator)

        orchestrator.trigger_full_sync.assert_awaited_once_with(
            initiated_by="system",
            session_type=SessionType.SCHEDULED,
        )

    @pytest.mark.asyncio
    async def test_skips_when_session_running(self):
        orchestrator = MagicMock()
        orchestrator.trigger_full_sync = AsyncMock(
            side_effect=SessionAlreadyRunning("tenant-1", "other-session")
        )

        await daily_sync_job(orchestrator)

        orchestrator.trigger_full_sync.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_logged_not_raised(self, caplog):
        orchestrator = MagicMock()
        orchestrator.trigger_full_sync = AsyncMock(side_effect=RuntimeError("database gone"))

        await daily_sync_job(orchestrator)

        assert "Daily sync failed: database gone" in caplog.text

    @pytest.mark.asyncio
    async def test_job_runs_against_database(self, orchestrator, fake_client):
        await daily_sync_job(orchestrator)

        sessions = await orchestrator.list_recent_sessions()
        assert len(sessions) == 1
        assert sessions[0].session_type == SessionType.SCHEDULED.value
        assert sessions[0].initiated_by == "system"
        assert sessions[0].status == "completed"


class TestSetupScheduler:
    """Tests for scheduler wiring."""

    @pytest.mark.asyncio
    async def test_daily_cron_job_registered(self):
        scheduler = setup_scheduler()
        try:
            job = scheduler.get_job("daily_sync")
            assert job is not None
            assert job.max_instances == 1
            assert job.coalesce is True
            fields = {field.name: str(field) for field in job.trigger.fields}
            assert fields["hour"] == "3"
            assert fields["minute"] == "30"
            assert str(job.trigger.timezone) == "Australia/Sydney"
        finally:
            shutdown_scheduler()

        assert scheduler_module.scheduler is None
