"""Interval scheduling for the worker process: queue polling, sweeps and rollover."""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.executors.pool import ThreadPoolExecutor as APSThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.util import undefined

logger = logging.getLogger(__name__)


@dataclass
class JobRunStats:
    """Outcome counters for one periodic job."""

    runs: int = 0
    failures: int = 0
    missed: int = 0
    last_run_at: datetime | None = None
    last_error: str | None = None


class SchedulerService:
    """
    Runs periodic docqueue jobs on a background thread pool.

    The scheduler owns no durable state. Jobs are bound methods of live
    components, held in a memory job store and registered again on every
    start; a run that overlaps the previous one is skipped and missed runs
    collapse into one.
    """

    def __init__(
        self,
        max_workers: int = 2,
        timezone: str = "UTC",
        misfire_grace_seconds: int = 60,
    ) -> None:
        """
        Args:
            max_workers: Threads available to scheduled jobs
            timezone: Scheduler timezone
            misfire_grace_seconds: How late a run may start before it counts as missed
        """
        self._max_workers = max_workers
        self._timezone = timezone
        self._misfire_grace = misfire_grace_seconds
        self._scheduler: BackgroundScheduler | None = None
        self._stats: dict[str, JobRunStats] = {}

    @property
    def scheduler(self) -> BackgroundScheduler:
        if self._scheduler is None:
            self._scheduler = BackgroundScheduler(
                jobstores={"default": MemoryJobStore()},
                executors={"default": APSThreadPoolExecutor(max_workers=self._max_workers)},
                job_defaults={
                    "coalesce": True,
                    "max_instances": 1,
                    "misfire_grace_time": self._misfire_grace,
                },
                timezone=self._timezone,
            )
            self._scheduler.add_listener(
                self._record_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED
            )
            logger.info(f"Scheduler configured with {self._max_workers} workers, timezone={self._timezone}")
        return self._scheduler

    def _record_event(self, event: JobExecutionEvent) -> None:
        stats = self._stats.setdefault(event.job_id, JobRunStats())
        if event.code == EVENT_JOB_MISSED:
            stats.missed += 1
            logger.warning(f"Scheduled job '{event.job_id}' missed its run at {event.scheduled_run_time}")
            return

        stats.runs += 1
        stats.last_run_at = event.scheduled_run_time
        if event.exception is not None:
            stats.failures += 1
            stats.last_error = str(event.exception)
            logger.error(f"Scheduled job '{event.job_id}' failed: {event.exception}")
        else:
            stats.last_error = None

    def start(self) -> None:
        if self.scheduler.running:
            logger.warning("Scheduler is already running")
            return
        self.scheduler.start()
        logger.info("Scheduler started")

    def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler; with ``wait`` running jobs finish first."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler shutdown complete")

    def every(
        self,
        job_id: str,
        func: Callable[[], Any],
        interval: timedelta,
        run_now: bool = False,
    ) -> None:
        """
        Run ``func`` every ``interval``, replacing any job with the same id.

        Raises:
            ValueError: If the interval is shorter than one second
        """
        seconds = int(interval.total_seconds())
        if seconds < 1:
            raise ValueError(f"Job '{job_id}' needs an interval of at least one second")

        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds, timezone=self._timezone),
            id=job_id,
            name=job_id,
            replace_existing=True,
            next_run_time=datetime.now(timezone.utc) if run_now else undefined,
        )
        self._stats.setdefault(job_id, JobRunStats())
        logger.info(f"Job '{job_id}' scheduled every {interval}")

    def remove(self, job_id: str) -> bool:
        """Returns False if no such job was scheduled."""
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        self._stats.pop(job_id, None)
        logger.info(f"Job '{job_id}' removed")
        return True

    def stats(self, job_id: str) -> JobRunStats | None:
        return self._stats.get(job_id)

    def jobs(self) -> list[dict[str, Any]]:
        """Scheduled jobs with their next run time and outcome counters."""
        return [
            {
                "id": job.id,
                "next_run_time": getattr(job, "next_run_time", None),  # unset until started
                **asdict(self._stats.get(job.id, JobRunStats())),
            }
            for job in self.scheduler.get_jobs()
        ]

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running
