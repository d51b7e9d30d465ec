"""Background job scheduler.

APScheduler-based scheduler for housekeeping jobs. Code expiry is enforced
at validation time; the purge job only removes old rows.
"""

from datetime import UTC, datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from portal.config import settings
from portal.database import get_session_maker
from portal.logging_config import get_logger
from portal.services.verification import VerificationStorageError, purge_stale_codes

logger = get_logger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def purge_verification_codes() -> int:
    """Delete verification code rows older than the retention window.

    Returns:
        Number of rows deleted (0 if the store was unavailable).
    """
    cutoff = datetime.now(UTC) - timedelta(hours=settings.verification_retention_hours)

    async with get_session_maker()() as db:
        try:
            deleted = await purge_stale_codes(db, cutoff)
        except VerificationStorageError as e:
            logger.error("Verification code purge failed", error=str(e))
            return 0

    if deleted:
        logger.info(
            "Purged stale verification codes",
            deleted=deleted,
            retention_hours=settings.verification_retention_hours,
        )
    return deleted


def start_scheduler() -> AsyncIOScheduler:
    """Start the background job scheduler.

    Returns:
        The started scheduler instance
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already running")
        return scheduler

    scheduler = AsyncIOScheduler()

    if settings.verification_purge_enabled:
        scheduler.add_job(
            purge_verification_codes,
            trigger=IntervalTrigger(hours=settings.verification_purge_interval_hours),
            id="verification_code_purge",
            name="Verification Code Purge",
            replace_existing=True,
            max_instances=1,
        )
        logger.info(
            "Scheduled verification code purge job",
            interval_hours=settings.verification_purge_interval_hours,
        )

    scheduler.start()
    logger.info("Background scheduler started")

    return scheduler


def stop_scheduler() -> None:
    """Stop the background job scheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    return scheduler
