"""
Daily fleet backup schedule.

One APScheduler BackgroundScheduler per deployment owns the cron job; jobs
live in the history database (SQLAlchemyJobStore) so other processes can
tell whether the schedule is active.
"""

import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from wpfleet import db

logger = logging.getLogger(__name__)

DAILY_JOB_ID = 'daily_backup'
JOB_TABLE = 'apscheduler_jobs'

# Module state: set once by init_scheduler()
scheduler = None
flask_app = None


def _persisted_job_count() -> int:
    """Number of rows in the job store table (0 when it was never created)."""
    try:
        count = db.session.execute(text(f"SELECT COUNT(*) FROM {JOB_TABLE}")).scalar()
    except SQLAlchemyError:
        db.session.rollback()
        return 0
    return count or 0


def _describe_next_run(job) -> str:
    return job.next_run_time.isoformat() if job.next_run_time else 'N/A'


def daily_trigger(cron_expression: str, timezone_name: str) -> CronTrigger:
    """
    Build the trigger of the daily fleet backup.

    Raises:
        ValueError: If cron_expression is not a five-field crontab line
    """
    return CronTrigger.from_crontab(cron_expression, timezone=timezone_name)


def init_scheduler(app):
    """
    Create the scheduler and register the daily fleet backup.

    Calling it again returns the existing scheduler.

    Args:
        app: Flask app the scheduled runs execute in

    Raises:
        ValueError: If DAILY_BACKUP_CRON is invalid
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    timezone_name = app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    trigger = daily_trigger(app.config['DAILY_BACKUP_CRON'], timezone_name)

    flask_app = app
    scheduler = BackgroundScheduler(
        jobstores={'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])},
        # One worker thread: two fleet runs never overlap
        executors={'default': ThreadPoolExecutor(max_workers=1)},
        job_defaults={
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 3600,
        },
        timezone=timezone_name,
    )

    scheduler.add_job(
        func=run_scheduled_backup,
        args=['daily'],
        trigger=trigger,
        id=DAILY_JOB_ID,
        name='Daily fleet backup',
        replace_existing=True,
    )
    logger.info(f"Daily fleet backup scheduled: {app.config['DAILY_BACKUP_CRON']} ({timezone_name})")

    return scheduler


def start_scheduler():
    """
    Start the scheduler created by init_scheduler().

    Raises:
        RuntimeError: If init_scheduler() was not called
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info("Scheduler already running")
        return

    scheduler.start()
    for job in scheduler.get_jobs():
        logger.info(f"Job {job.id} ({job.name}) next run: {_describe_next_run(job)}")


def stop_scheduler():
    if scheduler is not None and scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")


def run_scheduled_backup(backup_class: str = 'daily'):
    """
    Job body: run and record a fleet backup inside the app context.

    Errors end up in the log; the next scheduled run starts from scratch.
    """
    from wpfleet.backup.service import run_backup

    with flask_app.app_context():
        try:
            logger.info(f"Scheduled {backup_class} fleet backup starting")
            run, _ = run_backup(backup_class)
            logger.info(f"Scheduled {backup_class} fleet backup finished: {run.status}")
        except Exception:
            logger.exception(f"Scheduled {backup_class} fleet backup crashed")


def get_scheduled_jobs() -> list:
    """Jobs of the in-process scheduler (empty when this process has none)."""
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger),
        }
        for job in scheduler.get_jobs()
    ]


def is_scheduler_running() -> bool:
    """
    Whether the daily schedule is active in any process.

    A process that does not own the scheduler sees the jobs persisted by the
    one that does.
    """
    if scheduler is not None and scheduler.running:
        return True
    return _persisted_job_count() > 0
