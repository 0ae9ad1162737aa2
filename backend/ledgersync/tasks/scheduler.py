"""Background scheduler for the daily accounting sync."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ledgersync.config import get_settings
from ledgersync.exceptions import SessionAlreadyRunning
from ledgersync.models import SessionType
from ledgersync.services.orchestrator import SyncOrchestrator, get_orchestrator

logger = logging.getLogger(__name__)
settings = get_settings()

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def daily_sync_job(orchestrator: SyncOrchestrator | None = None) -> None:
    """Background job running a full incremental sync of every entity."""
    orchestrator = orchestrator or get_orchestrator()
    logger.info("Starting scheduled daily sync")
    try:
        result = await orchestrator.trigger_full_sync(
            initiated_by=settings.scheduled_initiator,
            session_type=SessionType.SCHEDULED,
        )
        logger.info(f"Daily sync {result.status}: {result.message}")
    except SessionAlreadyRunning as e:
        logger.info(f"Skipping daily sync: {e}")
    except Exception as e:
        logger.error(f"Daily sync failed: {e}", exc_info=True)


def setup_scheduler() -> AsyncIOScheduler:
    """Set up and start the background task scheduler."""
    global scheduler

    scheduler = AsyncIOScheduler(timezone=settings.sync_timezone)

    scheduler.add_job(
        daily_sync_job,
        trigger=CronTrigger(
            hour=settings.daily_sync_hour,
            minute=settings.daily_sync_minute,
            timezone=settings.sync_timezone,
        ),
        id="daily_sync",
        name="Daily Xero sync",
        replace_existing=True,
        misfire_grace_time=3600,
        coalesce=True,
        max_instances=1,
    )

    scheduler.start()
    logger.info(
        f"Scheduler started: daily sync at {settings.daily_sync_hour:02d}:"
        f"{settings.daily_sync_minute:02d} {settings.sync_timezone}"
    )

    return scheduler


def shutdown_scheduler() -> None:
    """Shut down the scheduler gracefully."""
    global scheduler

    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shut down")
        scheduler = None
