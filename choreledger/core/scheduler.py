"""Scheduler for background jobs (task expiry, settlement retries)."""

import logging
from collections.abc import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from choreledger.core.config import settings
from choreledger.modules.tasks import settlement, state_machine


logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = AsyncIOScheduler()


async def run_job(job_func: Callable[[], Awaitable[object]], job_name: str) -> bool:
    """Run one job, logging instead of raising so the next run still happens.

    Returns:
        True if the job completed
    """
    logger.info("Running %s job", job_name)
    try:
        await job_func()
    except Exception:
        logger.exception("Error in %s job", job_name)
        return False
    logger.info("Completed %s job", job_name)
    return True


async def expire_overdue_tasks() -> None:
    """Expire tasks whose due date has passed."""
    result = await state_machine.expire_overdue_tasks()
    if result.expired_count:
        logger.info("Expiry sweep expired %d task(s)", result.expired_count)


async def retry_failed_settlements() -> None:
    """Retry FAILED rewards of tasks still awaiting payment."""
    await settlement.retry_failed_settlements()


def start_scheduler() -> None:
    """Start the scheduler and register all jobs.

    This should be called during FastAPI app startup.
    """
    logger.info("Starting scheduler")

    scheduler.add_job(
        run_job,
        trigger=IntervalTrigger(minutes=settings.expiry_sweep_interval_minutes),
        args=[expire_overdue_tasks, "expire_overdue_tasks"],
        id="expire_overdue_tasks",
        name="Expire Overdue Tasks",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info("Scheduled expiry sweep every %d minutes", settings.expiry_sweep_interval_minutes)

    scheduler.add_job(
        run_job,
        trigger=IntervalTrigger(minutes=settings.settlement_retry_interval_minutes),
        args=[retry_failed_settlements, "retry_failed_settlements"],
        id="retry_failed_settlements",
        name="Retry Failed Settlements",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info("Scheduled settlement retries every %d minutes", settings.settlement_retry_interval_minutes)

    scheduler.start()
    logger.info("Scheduler started successfully")


def stop_scheduler() -> None:
    """Stop the scheduler.

    This should be called during FastAPI app shutdown.
    """
    logger.info("Stopping scheduler")
    if scheduler.running:
        scheduler.shutdown(wait=True)
    logger.info("Scheduler stopped")
