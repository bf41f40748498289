"""APScheduler setup for the optional daily Withings sync."""

import logging
import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from healthsync.core.config import Settings
from healthsync.core.database import Database
from healthsync.core.errors import SyncError
from healthsync.models.database import Provider
from healthsync.services.sync import ProviderRunGuard, SyncService

logger = logging.getLogger(__name__)


async def run_scheduled_sync(
    database: Database,
    settings: Settings,
    run_guard: ProviderRunGuard,
    http_client: httpx.AsyncClient,
):
    """Run the daily Withings sync job."""
    logger.info("Starting scheduled Withings sync")

    async with database.session() as session:
        sync_service = SyncService(session, settings, run_guard, http_client)
        try:
            summary = await sync_service.run_sync(Provider.WITHINGS)
            logger.info(f"Scheduled sync completed: {summary}")
        except SyncError as e:
            # Already recorded in the sync log; the next run retries the window
            logger.error(f"Scheduled sync failed: {e}")


def start_scheduler(
    database: Database,
    settings: Settings,
    run_guard: ProviderRunGuard,
    http_client: httpx.AsyncClient,
) -> AsyncIOScheduler:
    """Start the APScheduler with the daily sync job."""
    scheduler = AsyncIOScheduler(timezone=settings.tz)

    scheduler.add_job(
        run_scheduled_sync,
        CronTrigger(hour=settings.sync_hour, minute=0),
        args=[database, settings, run_guard, http_client],
        id="daily_withings_sync",
        name="Daily Withings sync",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(f"Scheduler started - daily sync at {settings.sync_hour}:00 ({settings.tz})")
    return scheduler


def stop_scheduler(scheduler: AsyncIOScheduler | None) -> None:
    """Stop the APScheduler."""
    if scheduler is not None:
        scheduler.shutdown()
        logger.info("Scheduler stopped")
