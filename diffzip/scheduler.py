"""
APScheduler configuration for DiffZip.

Manages:
- Backup runs requested from the API ("run now")
- The optional backup run at application launch

Every run uses the same job id, so max_instances=1 keeps two runs from
writing to the same destination at once.
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from diffzip.backup.executor import execute_backup
from diffzip.settings import AutoBackupType, BackupSettings


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'backup_run'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


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

    jobstores = {
        'default': MemoryJobStore()
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one backup run at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started successfully (state={scheduler.state})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler, flask_app

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")
    scheduler = None
    flask_app = None


def run_backup(app, backup_type=AutoBackupType.FULL):
    """
    Run a backup synchronously with the app's current settings.

    The result is kept as the app's last backup result.

    Args:
        app: Flask app instance
        backup_type: AutoBackupType or its value

    Returns:
        BackupResult
    """
    state = app.extensions['diffzip']
    settings = BackupSettings.from_config(app.config)
    result = execute_backup(settings, state['vault'], AutoBackupType.parse(backup_type), progress=state['progress'])
    state['last_result'] = result
    return result


def _execute_backup_wrapper(backup_type: str):
    """
    Wrapper function for executing backups in scheduler context.

    Args:
        backup_type: AutoBackupType value
    """
    with flask_app.app_context():
        try:
            logger.info(f"Scheduler executing backup ({backup_type})")
            result = run_backup(flask_app, backup_type)
            logger.info(f"Backup completed with status: {result.status}")
        except Exception as e:
            logger.error(f"Scheduled backup failed: {e}")


def trigger_backup_now(backup_type=AutoBackupType.FULL, delay_seconds: int = 1):
    """
    Queue a backup run.

    Args:
        backup_type: AutoBackupType or its value
        delay_seconds: Delay before the run starts

    Raises:
        RuntimeError: If the scheduler is not initialized
        SettingsError: If backup_type is unknown
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    backup_type = AutoBackupType.parse(backup_type)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[backup_type.value],
        trigger=DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)),
        id=BACKUP_JOB_ID,
        name=f"Backup ({backup_type.value})",
        replace_existing=True
    )

    logger.info(f"Queued backup run ({backup_type.value})")


def schedule_launch_backup(app):
    """Queue the launch-time backup if it is enabled."""
    settings = BackupSettings.from_config(app.config)
    if not settings.start_backup_at_launch:
        return False
    trigger_backup_now(settings.launch_backup_type, delay_seconds=5)
    return True


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


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
