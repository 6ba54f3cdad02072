"""
Background scheduler — runs the notification jobs inside the FastAPI process.

Jobs:
  - Due scheduled notifications (every REPROCESS_INTERVAL_SECONDS)
  - Digest tick (top of every hour; each cadence fires only in its boundary hour)
  - Retention cleanup (03:30 in TIMEZONE)
"""
import logging
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from app.application.reprocessor import process_due_notifications, run_cleanup
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(daemon=True)


def _run_due_notifications(services):
    lease = timedelta(minutes=services.settings.SCHEDULED_CLAIM_LEASE_MINUTES)
    try:
        process_due_notifications(services.coordinator, services.records, utcnow(), lease)
    except Exception:
        logger.exception("Scheduled notification job failed")


def _run_digest(services):
    try:
        services.digests.run(utcnow())
    except Exception:
        logger.exception("Digest job failed")


def _run_cleanup(services):
    try:
        result = run_cleanup(services)
        logger.info("Cleanup job: %s", result)
    except Exception:
        logger.exception("Cleanup job failed")


def start_scheduler(services):
    """Start the background scheduler with all periodic jobs."""
    settings = services.settings

    scheduler.add_job(
        _run_due_notifications,
        "interval",
        seconds=settings.REPROCESS_INTERVAL_SECONDS,
        args=[services],
        id="due_notifications",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.add_job(
        _run_digest,
        CronTrigger(minute=0, timezone=settings.TIMEZONE),
        args=[services],
        id="digest",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.add_job(
        _run_cleanup,
        CronTrigger(hour=3, minute=30, timezone=settings.TIMEZONE),
        args=[services],
        id="cleanup",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        "Scheduler started: due_notifications (every %ds), digest (hourly, %s), cleanup (03:30 %s)",
        settings.REPROCESS_INTERVAL_SECONDS, settings.TIMEZONE, settings.TIMEZONE,
    )


def shutdown_scheduler():
    """Gracefully stop the scheduler, letting a running job finish."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")
