"""
Retention scheduler.

Runs the daily retention sweep and the weekly audit log cleanup on a private
``schedule.Scheduler`` polled by one daemon thread.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import schedule

from ..config import ComplianceConfig
from .cleanup import RetentionCleanupEngine

logger = logging.getLogger(__name__)

DAILY_CLEANUP_JOB = "daily-cleanup"
WEEKLY_AUDIT_CLEANUP_JOB = "weekly-audit-cleanup"


class RetentionScheduler:
    """Named recurring retention jobs."""

    def __init__(self, cleanup: RetentionCleanupEngine, config: ComplianceConfig):
        """
        Initialize the scheduler.

        Args:
            cleanup: Engine the jobs run against
            config: Job times, timezone and poll interval
        """
        self.cleanup = cleanup
        self.config = config
        self._scheduler = schedule.Scheduler()
        self._jobs: Dict[str, schedule.Job] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _job_targets(self) -> Dict[str, Callable[[], Any]]:
        return {
            DAILY_CLEANUP_JOB: self.cleanup.run_sweep,
            WEEKLY_AUDIT_CLEANUP_JOB: self.cleanup.cleanup_audit_logs,
        }

    def install_jobs(self) -> None:
        """(Re)install both jobs, cancelling any previous job of the same name."""
        tz = self.config.scheduler_timezone
        with self._lock:
            for name in list(self._jobs):
                self._scheduler.cancel_job(self._jobs.pop(name))

            self._jobs[DAILY_CLEANUP_JOB] = (
                self._scheduler.every()
                .day.at(self.config.daily_cleanup_time, tz)
                .do(self._run_job, DAILY_CLEANUP_JOB)
                .tag(DAILY_CLEANUP_JOB)
            )
            weekly = getattr(self._scheduler.every(), self.config.weekly_cleanup_day)
            self._jobs[WEEKLY_AUDIT_CLEANUP_JOB] = (
                weekly.at(self.config.weekly_cleanup_time, tz)
                .do(self._run_job, WEEKLY_AUDIT_CLEANUP_JOB)
                .tag(WEEKLY_AUDIT_CLEANUP_JOB)
            )

        logger.info(
            f"Retention jobs installed: daily at {self.config.daily_cleanup_time}, "
            f"{self.config.weekly_cleanup_day} at {self.config.weekly_cleanup_time} ({tz})"
        )

    def start(self) -> None:
        """Install the jobs and start the runner thread if it is not running."""
        self.install_jobs()

        if self.is_running:
            return

        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run_loop,
            args=(self._stop_event,),
            name="retention-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("Retention scheduler started")

    def stop(self, timeout: float = 5.0) -> None:
        """
        Cancel the jobs and stop the runner thread.

        A job already running is not interrupted; the thread exits once it
        returns, and ``stop`` waits at most ``timeout`` seconds for that.
        """
        self._stop_event.set()
        with self._lock:
            for name in list(self._jobs):
                self._scheduler.cancel_job(self._jobs.pop(name))

        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Retention scheduler thread still finishing a job")
            self._thread = None
        logger.info("Retention scheduler stopped")

    def _run_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            # The lock is never held while a job runs
            with self._lock:
                due = sorted(job for job in self._scheduler.jobs if job.should_run)
            for job in due:
                if stop_event.is_set():
                    break
                job.run()
            stop_event.wait(self.config.scheduler_poll_seconds)

    def _run_job(self, name: str) -> Any:
        """Run one job; failures are logged and the job stays scheduled."""
        logger.info(f"Running retention job {name}")
        try:
            return self._job_targets()[name]()
        except Exception:
            logger.exception(f"Retention job {name} failed")
            return None

    def run_job(self, name: str) -> Any:
        """
        Fire a named job immediately.

        Raises:
            KeyError: Unknown job name
        """
        if name not in self._job_targets():
            raise KeyError(f"Unknown job: {name}")
        return self._run_job(name)

    def trigger_manual(self, table_name: str, user_id: Optional[str] = None) -> int:
        """Clean one table now, bypassing the schedule."""
        return self.cleanup.trigger_manual_cleanup(table_name, user_id=user_id)

    def jobs(self) -> List[Dict[str, Optional[datetime]]]:
        """Installed jobs with their next run time."""
        with self._lock:
            return [
                {"name": name, "next_run": job.next_run}
                for name, job in sorted(self._jobs.items())
            ]
