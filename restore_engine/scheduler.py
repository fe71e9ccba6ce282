"""
APScheduler configuration and job scheduling for the backup engine.

Manages:
- Periodic backups of every watched directory
- Daily retention policy enforcement
- Manual backup triggers
- Change monitoring (polling, debounce, skip-if-busy backups)
"""

import os
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Tuple, Callable, Optional, Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from restore_engine.backup.sources import FileSelector, find_watch_root

logger = logging.getLogger(__name__)

# Global scheduler instance and engine reference
scheduler = None
engine = None


def init_scheduler(backup_engine, timezone_name: str = 'UTC'):
    """
    Initialize and configure APScheduler.

    Args:
        backup_engine: Engine whose backups and retention are scheduled
        timezone_name: Scheduler timezone

    Returns:
        BackgroundScheduler instance
    """
    global scheduler, engine

    if scheduler is not None:
        return scheduler

    engine = backup_engine

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
        timezone=timezone_name
    )

    # Retention policy job (runs daily at 2 AM)
    scheduler.add_job(
        func=_run_retention,
        trigger=CronTrigger(hour=2, minute=0),
        id='retention_cleanup',
        name='Daily Retention Cleanup',
        replace_existing=True
    )

    interval = backup_engine.config.backup_interval_seconds
    if interval > 0:
        scheduler.add_job(
            func=_run_backup_all,
            trigger=IntervalTrigger(seconds=interval),
            id='periodic_backup',
            name='Periodic Backup',
            replace_existing=True
        )

    return scheduler


def start_scheduler():
    """Start the APScheduler."""
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started successfully (state={scheduler.state}, running={scheduler.running})")

    for job in get_scheduled_jobs():
        logger.info(f"  - {job['id']}: {job['name']} (next run: {job['next_run'] or 'N/A'})")


def stop_scheduler():
    """Stop the APScheduler and forget it."""
    global scheduler, engine

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")

    scheduler = None
    engine = None


def _run_backup_all():
    try:
        summary = engine.backup_executor().backup_all()
        logger.info(f"Scheduled backup finished with {len(summary['errors'])} errors")
    except Exception as e:
        logger.error(f"Scheduled backup failed: {e}")


def _run_retention():
    try:
        summary = engine.retention_manager().apply_all()
        logger.info(f"Retention cleanup finished with {len(summary['errors'])} errors")
    except Exception as e:
        logger.error(f"Retention cleanup failed: {e}")


def _run_directory_backup(directory: str):
    try:
        engine.backup_executor().backup_directory(directory)
    except Exception as e:
        logger.error(f"Backup of {directory} failed: {e}")


def trigger_backup_now(directory: Optional[str] = None):
    """
    Trigger a backup immediately (1 second delay).

    Args:
        directory: Watched directory to back up (default: all)
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    if directory is None:
        func, args, name = _run_backup_all, [], 'Manual: all directories'
    else:
        func, args, name = _run_directory_backup, [directory], f"Manual: {directory}"

    scheduler.add_job(
        func=func,
        args=args,
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{int(now.timestamp() * 1000)}",
        name=name,
        replace_existing=False
    )
    logger.info(f"Manually triggered backup: {name}")


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
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs


class ChangeMonitor:
    """
    Watches directories by polling and backs up changed files.

    Changes are collected into a pending set. Each change (re)starts a
    debounce timer; when it fires, the pending paths are grouped by
    watched root and backed up. If a backup is still running, the run is
    skipped and the paths stay pending.
    """

    DEBOUNCE_JOB_ID = 'change_debounce'
    POLL_JOB_ID = 'change_poll'

    def __init__(
        self,
        roots: List[str],
        backup_files: Callable[[List[str], str], Any],
        job_scheduler,
        debounce_seconds: float = 10,
        poll_interval_seconds: float = 5,
        selector: Optional[FileSelector] = None
    ):
        """
        Args:
            roots: Watched directories
            backup_files: Called as backup_files(paths, root) once per root
            job_scheduler: APScheduler scheduler used for debounce and polling jobs
            debounce_seconds: Quiet period before changes are backed up
            poll_interval_seconds: Seconds between directory scans
            selector: FileSelector used to ignore excluded files
        """
        self.roots = [os.path.abspath(r) for r in roots]
        self.backup_files = backup_files
        self.scheduler = job_scheduler
        self.debounce_seconds = debounce_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.selector = selector or FileSelector(exclude_patterns=[])

        self._pending = set()
        self._pending_lock = threading.Lock()
        self._gate = threading.Lock()
        self._snapshot: Dict[str, Tuple[float, int]] = {}

    @property
    def pending(self) -> List[str]:
        with self._pending_lock:
            return sorted(self._pending)

    def start(self):
        """Take the initial snapshot and start polling."""
        self._snapshot = self._take_snapshot()
        self.scheduler.add_job(
            func=self.scan,
            trigger=IntervalTrigger(seconds=self.poll_interval_seconds),
            id=self.POLL_JOB_ID,
            name='Change Monitor Poll',
            replace_existing=True
        )
        logger.info(f"Watching {len(self.roots)} directories ({len(self._snapshot)} files)")

    def stop(self):
        for job_id in (self.POLL_JOB_ID, self.DEBOUNCE_JOB_ID):
            if self.scheduler.get_job(job_id):
                self.scheduler.remove_job(job_id)

    def _take_snapshot(self) -> Dict[str, Tuple[float, int]]:
        snapshot = {}
        for path in self.selector.get_files(self.roots):
            try:
                stat = os.stat(path)
            except OSError:
                continue
            snapshot[path] = (stat.st_mtime, stat.st_size)
        return snapshot

    def scan(self) -> List[str]:
        """
        Compare the watched directories against the last snapshot.

        Returns:
            Created, modified and deleted paths (also recorded as pending)
        """
        current = self._take_snapshot()
        previous = self._snapshot
        self._snapshot = current

        changed = [p for p, state in current.items() if previous.get(p) != state]
        changed.extend(p for p in previous if p not in current)

        for path in changed:
            self.notify_change(path)

        return changed

    def notify_change(self, path: str):
        """Record a changed path and restart the debounce timer."""
        with self._pending_lock:
            self._pending.add(os.path.abspath(path))
        self._schedule_debounce()

    def _schedule_debounce(self):
        self.scheduler.add_job(
            func=self.process_pending,
            trigger=DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=self.debounce_seconds)),
            id=self.DEBOUNCE_JOB_ID,
            name='Change Monitor Debounce',
            replace_existing=True
        )

    def process_pending(self) -> bool:
        """
        Back up pending changes unless a backup is already running.

        Returns:
            True if a run happened, False if it was skipped
        """
        if not self._gate.acquire(blocking=False):
            logger.debug("Backup already in progress, skipping this run")
            return False

        try:
            with self._pending_lock:
                paths = list(self._pending)
                self._pending.clear()

            by_root: Dict[str, List[str]] = {}
            for path in paths:
                root = find_watch_root(path, self.roots)
                if root is None:
                    logger.warning(f"Changed file is outside watched directories: {path}")
                    continue
                by_root.setdefault(root, []).append(path)

            for root, root_paths in by_root.items():
                try:
                    logger.info(f"Backing up {len(root_paths)} changed files in {root}")
                    self.backup_files(sorted(root_paths), root)
                except Exception as e:
                    logger.error(f"Change backup failed for {root}: {e}")

            return True
        finally:
            self._gate.release()
