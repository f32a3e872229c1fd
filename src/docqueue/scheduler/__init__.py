"""Background scheduling for the queue worker and maintenance jobs."""

from docqueue.scheduler.service import SchedulerService

__all__ = ["SchedulerService"]
