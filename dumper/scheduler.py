"""
APScheduler configuration and run loop for the dumper.

Two modes:
- one-shot: run the pipeline once; a failed run is an error for the caller
- periodic: run immediately, then on every interval tick until cancelled;
  failed runs are logged and the loop continues
"""

import logging
from datetime import datetime, timezone

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from dumper.backup.cancellation import CancellationToken
from dumper.backup.executor import BackupExecutor, execute_backup


BACKUP_JOB_ID = 'mongodb_backup'

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = None


def init_scheduler(executor: BackupExecutor, interval_seconds: float, cancel_token: CancellationToken):
    """
    Initialize and configure APScheduler with the periodic backup job.

    A single worker thread plus max_instances=1 guarantees runs never
    overlap; ticks that fire while a run is active are coalesced away.

    Args:
        executor: BackupExecutor to run on every tick
        interval_seconds: Seconds between runs
        cancel_token: Token passed to every run
    """
    global scheduler

    if scheduler is not None:
        return scheduler

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine missed ticks into one run
        'max_instances': 1,  # Never start a run while the previous one is active
        'misfire_grace_time': None
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[executor, cancel_token],
        trigger=IntervalTrigger(seconds=interval_seconds, timezone='UTC'),
        next_run_time=datetime.now(timezone.utc),
        id=BACKUP_JOB_ID,
        name='Periodic MongoDB backup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """Start the APScheduler."""
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler(wait: bool = True):
    """Stop the APScheduler and forget it."""
    global scheduler

    if scheduler is None:
        return

    if scheduler.running:
        scheduler.shutdown(wait=wait)
        logger.info("APScheduler stopped")

    scheduler = None


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def _execute_backup_wrapper(executor: BackupExecutor, cancel_token: CancellationToken):
    """
    Run one backup from the scheduler thread.

    Failures are logged and swallowed so the next tick still runs.
    """
    if cancel_token.is_cancelled:
        return

    logger.info("Starting scheduled backup")
    try:
        result = executor.execute(cancel_token)
    except Exception as e:
        logger.error(f"Scheduled backup could not run: {e}")
        return

    if result.status == 'success':
        logger.info(f"Scheduled backup completed: {result.remote_key}")
    elif result.status == 'cancelled':
        logger.info("Scheduled backup cancelled")
    else:
        logger.error(f"Scheduled backup failed: {result.error_message}")


def run_once(executor: BackupExecutor, cancel_token: CancellationToken):
    """
    Run a single backup.

    Raises:
        DumperError: If the run failed
        BackupCancelled: If the run was cancelled
    """
    logger.info("Running one-time backup")
    result = execute_backup(executor, cancel_token)
    logger.info("One-time backup completed successfully")
    return result


def run_periodic(executor: BackupExecutor, interval_seconds: float, cancel_token: CancellationToken):
    """
    Run backups every interval_seconds until cancel_token is cancelled.

    Blocks the calling thread. On cancellation the in-flight run observes
    the same token and aborts; shutdown waits for it to finish.
    """
    logger.info(f"Starting periodic MongoDB backups (interval: {interval_seconds}s)")

    init_scheduler(executor, interval_seconds, cancel_token)
    start_scheduler()

    try:
        cancel_token.wait()
    finally:
        logger.info("Backup service shutting down")
        stop_scheduler(wait=True)


def run(executor: BackupExecutor, interval_seconds: float, cancel_token: CancellationToken):
    """Dispatch to one-shot (interval 0) or periodic mode."""
    if not interval_seconds:
        return run_once(executor, cancel_token)
    run_periodic(executor, interval_seconds, cancel_token)
