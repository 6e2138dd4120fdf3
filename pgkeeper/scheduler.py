"""
APScheduler configuration and job scheduling for pgkeeper.

Manages:
- Daily backup run (full or differential, picked by weekday)
- Daily retention cleanup
- Periodic health check
"""

import logging
from typing import Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from pgkeeper.backup.executor import create_executor


logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def parse_time_of_day(value: str) -> Tuple[int, int]:
    """
    Parse an 'HH:MM' string.

    Raises:
        ValueError: If the value is not a valid time of day
    """
    try:
        hour, minute = (int(part) for part in value.split(':'))
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid time of day: {value!r} (expected HH:MM)")

    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time of day: {value!r} (expected HH:MM)")
    return hour, minute


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    executors = {
        'default': ThreadPoolExecutor(max_workers=3)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    backup_hour, backup_minute = parse_time_of_day(app.config.get('BACKUP_TIME', '02:00'))
    cleanup_hour, cleanup_minute = parse_time_of_day(app.config.get('BACKUP_CLEANUP_TIME', '03:00'))

    scheduler.add_job(
        func=_run_backup_job,
        trigger=CronTrigger(hour=backup_hour, minute=backup_minute),
        id='backup_run',
        name='Daily Database Backup',
        replace_existing=True
    )

    scheduler.add_job(
        func=_cleanup_job,
        trigger=CronTrigger(hour=cleanup_hour, minute=cleanup_minute),
        id='backup_cleanup',
        name='Daily Retention Cleanup',
        replace_existing=True
    )

    scheduler.add_job(
        func=_health_check_job,
        trigger=IntervalTrigger(hours=int(app.config.get('BACKUP_HEALTH_CHECK_INTERVAL_HOURS', 6))),
        id='backup_health_check',
        name='Backup Health Check',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")

    for job in scheduler.get_jobs():
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]


def _run_backup_job():
    with flask_app.app_context():
        try:
            result = create_executor(flask_app).run()
            logger.info(f"Scheduled backup finished (success={result.success}, file={result.filename or '-'})")
        except Exception:
            logger.exception("Scheduled backup raised an unexpected error")


def _cleanup_job():
    with flask_app.app_context():
        try:
            create_executor(flask_app).cleanup()
        except Exception:
            logger.exception("Scheduled cleanup raised an unexpected error")


def _health_check_job():
    with flask_app.app_context():
        try:
            create_executor(flask_app).health_check()
        except Exception:
            logger.exception("Scheduled health check raised an unexpected error")
