"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from restocked.config import settings
from restocked.worker.tasks import task_runner

logger = logging.getLogger(__name__)


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Check cycle every settings.check_interval_minutes
    - Email delivery cycle every settings.email_interval_minutes

    max_instances=1 only guards this process; overlapping runs across
    processes are turned into skips by the leased locks.

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    check_interval = max(1, int(settings.check_interval_minutes))
    email_interval = max(1, int(settings.email_interval_minutes))

    if settings.enable_check_scheduler:
        scheduler.add_job(
            task_runner.run_scheduled_checks,
            IntervalTrigger(minutes=check_interval),
            id="check_cycle",
            name="Re-check tracked products",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=600,
            replace_existing=True,
        )

    if settings.enable_email_scheduler:
        scheduler.add_job(
            task_runner.deliver_emails,
            IntervalTrigger(minutes=email_interval),
            id="email_delivery",
            name="Deliver notification emails",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=120,
            replace_existing=True,
        )

    logger.info(
        "Scheduler configured: %s, %s",
        f"check cycle every {check_interval} minutes"
        if settings.enable_check_scheduler
        else "check cycle disabled",
        f"email delivery every {email_interval} minutes"
        if settings.enable_email_scheduler
        else "email delivery disabled",
    )

    return scheduler
