import atexit
import logging
from typing import Any, Callable, Dict, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from .retention import RetentionEngine

logger = logging.getLogger("filedrop.scheduler")

EXPIRED_JOB_ID = "sweep_expired"
ORPHAN_JOB_ID = "sweep_orphans"
TEMP_JOB_ID = "sweep_temp_files"
DEEP_JOB_ID = "deep_maintenance"


def _run_job(job_id: str, func: Callable[[], Any]) -> None:
    try:
        func()
    except Exception:
        logger.exception("scheduled_job_failed job=%s", job_id)


class RetentionScheduler:
    """Runs retention sweeps on timers in a background thread."""

    def __init__(
        self,
        engine: RetentionEngine,
        *,
        cleanup_interval_minutes: int = 60,
        deep_cleanup_hour: int = 2,
        scheduler: Optional[BackgroundScheduler] = None,
    ) -> None:
        self.engine = engine
        self.cleanup_interval_minutes = max(1, int(cleanup_interval_minutes))
        self.deep_cleanup_hour = int(deep_cleanup_hour)
        self._scheduler = scheduler or BackgroundScheduler(daemon=True)
        self._atexit_registered = False

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def _add_jobs(self) -> None:
        self._scheduler.add_job(
            func=_run_job,
            args=(EXPIRED_JOB_ID, self.engine.sweep_expired),
            trigger="interval",
            minutes=self.cleanup_interval_minutes,
            id=EXPIRED_JOB_ID,
            name="Remove expired records and files",
            replace_existing=True,
        )
        self._scheduler.add_job(
            func=_run_job,
            args=(ORPHAN_JOB_ID, self.engine.sweep_orphans),
            trigger="interval",
            hours=1,
            id=ORPHAN_JOB_ID,
            name="Remove orphaned upload files",
            replace_existing=True,
        )
        self._scheduler.add_job(
            func=_run_job,
            args=(TEMP_JOB_ID, self.engine.sweep_temp_files),
            trigger="interval",
            hours=1,
            id=TEMP_JOB_ID,
            name="Remove stale temporary files",
            replace_existing=True,
        )
        self._scheduler.add_job(
            func=_run_job,
            args=(DEEP_JOB_ID, self.engine.run_deep),
            trigger="cron",
            hour=self.deep_cleanup_hour,
            minute=0,
            id=DEEP_JOB_ID,
            name="Deep maintenance",
            replace_existing=True,
        )

    def start(self, run_immediately: bool = True) -> None:
        if self.running:
            logger.warning("scheduler_already_running")
            return

        # Enforce retention once before serving traffic.
        if run_immediately:
            _run_job("startup_cleanup", self.engine.run_routine)

        self._add_jobs()
        self._scheduler.start()
        if not self._atexit_registered:
            atexit.register(self.shutdown)
            self._atexit_registered = True
        logger.info(
            "scheduler_started interval_minutes=%d deep_hour=%d",
            self.cleanup_interval_minutes,
            self.deep_cleanup_hour,
        )

    def shutdown(self, wait: bool = False) -> None:
        if not self.running:
            return
        self._scheduler.shutdown(wait=wait)
        logger.info("scheduler_stopped")

    def update_interval(self, minutes: int) -> None:
        """Change how often the expiry sweep runs."""

        self.cleanup_interval_minutes = max(1, int(minutes))
        if not self.running:
            return
        try:
            self._scheduler.reschedule_job(
                EXPIRED_JOB_ID, trigger="interval", minutes=self.cleanup_interval_minutes
            )
        except JobLookupError:
            self._add_jobs()

    def status(self) -> Dict[str, Any]:
        jobs: Dict[str, Optional[str]] = {}
        for job_id in (EXPIRED_JOB_ID, ORPHAN_JOB_ID, TEMP_JOB_ID, DEEP_JOB_ID):
            job = self._scheduler.get_job(job_id)
            next_run = getattr(job, "next_run_time", None) if job else None
            jobs[job_id] = next_run.isoformat() if next_run else None
        return {"running": self.running, "jobs": jobs}
