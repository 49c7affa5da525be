"""
APScheduler configuration for unattended backup runs.

Manages:
- The recurring backup job (based on a cron expression)
- Scheduler start and shutdown
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'site_backup'

# Global scheduler instance
scheduler = None


def init_scheduler(cron_expression: str, job_func, timezone: str = 'UTC'):
    """
    Initialize and configure APScheduler.

    Args:
        cron_expression: Standard five field crontab expression
        job_func: Callable running one backup cycle
        timezone: Timezone the cron expression is evaluated in

    Returns:
        Configured (not yet started) scheduler

    Raises:
        ValueError: If the cron expression is invalid
    """
    global scheduler

    if scheduler is not None:
        return scheduler

    job_defaults = {
        'coalesce': True,  # Combine multiple pending runs into one
        'max_instances': 1,  # Never overlap two backup runs
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    trigger = CronTrigger.from_crontab(cron_expression, timezone=timezone)

    scheduler = BlockingScheduler(job_defaults=job_defaults, timezone=timezone)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[job_func],
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name=f"Site backup ({cron_expression})",
        replace_existing=True
    )

    logger.info(f"Scheduled site backup: {cron_expression} ({timezone})")
    return scheduler


def _execute_backup_wrapper(job_func):
    """
    Run one backup cycle in scheduler context.

    Errors are logged so a failed run never stops the schedule.
    """
    try:
        logger.info("Scheduler executing site backup")
        job_func()
        logger.info("Scheduled site backup finished")
    except Exception:
        logger.exception("Scheduled site backup failed")


def start_scheduler():
    """
    Start the scheduler. Blocks until stop_scheduler() or an interrupt.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    for job in scheduler.get_jobs():
        logger.info(f"  - {job.id}: {job.name}")

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler interrupted")


def stop_scheduler():
    """Stop the scheduler and forget it."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("APScheduler stopped")

    scheduler = None
