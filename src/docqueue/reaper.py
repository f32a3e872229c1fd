"""
Scheduled cleanup of expired state.

Every pass is independent and idempotent: a failing pass is logged and
reported without stopping the others, and a sweep right after a sweep
changes nothing.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from docqueue.admission.controller import AdmissionController
from docqueue.blobs import BlobStore
from docqueue.db.base import utcnow
from docqueue.errors import DocQueueError
from docqueue.history import HistoryStore
from docqueue.ledger.ledger import QuotaLedger
from docqueue.progress.tracker import ProgressTracker
from docqueue.queue.store import PriorityQueueStore

logger = logging.getLogger(__name__)

SCRATCH_PATTERN = "*_processed.pdf"


@dataclass
class SweepReport:
    """Per-pass counts and errors from one sweep."""

    started_at: datetime
    counts: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def total_changes(self) -> int:
        return sum(self.counts.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "ok": self.ok,
            "counts": dict(self.counts),
            "errors": dict(self.errors),
        }


class Reaper:
    """
    Purges terminal jobs, stale operations, old history and temp files, and
    rolls over idle quota accounts.
    """

    def __init__(
        self,
        queue: PriorityQueueStore,
        tracker: ProgressTracker,
        history: HistoryStore,
        ledger: QuotaLedger,
        blobs: BlobStore,
        controller: AdmissionController | None = None,
        scratch_dir: str | Path | None = "/tmp",
        job_retention: timedelta = timedelta(hours=24),
        operation_retention: timedelta = timedelta(hours=24),
        stalled_after: timedelta = timedelta(hours=2),
        history_retention: timedelta = timedelta(days=90),
        scratch_retention: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize the reaper.

        Args:
            queue: Queue store holding job rows
            tracker: Progress tracker holding operations
            history: History store
            ledger: Quota ledger for proactive rollover
            blobs: Blob store holding uploaded and processed documents
            controller: Used to record failures of stalled jobs (pass skipped if None)
            scratch_dir: Directory of transform temp files (pass skipped if None)
            job_retention: Age after which terminal jobs are deleted
            operation_retention: Age after which terminal operations are deleted
            stalled_after: Age of a processing claim, and of its last heartbeat,
                after which it is recovered
            history_retention: Age after which history records are deleted
            scratch_retention: Age after which scratch files are deleted
            clock: Source of the current UTC time
        """
        self._queue = queue
        self._tracker = tracker
        self._history = history
        self._ledger = ledger
        self._blobs = blobs
        self._controller = controller
        self._scratch_dir = Path(scratch_dir) if scratch_dir else None
        self._job_retention = job_retention
        self._operation_retention = operation_retention
        self._stalled_after = stalled_after
        self._history_retention = history_retention
        self._scratch_retention = scratch_retention
        self._clock = clock

    def purge_jobs(self, now: datetime) -> int:
        """Delete terminal jobs past retention along with their stored blobs."""
        expired = self._queue.purge_terminal(now - self._job_retention)
        for job in expired:
            locators = [job.blob_locator]
            if job.result and job.result.get("processed_locator"):
                locators.append(job.result["processed_locator"])
            for locator in locators:
                try:
                    self._blobs.delete(locator)
                except DocQueueError as e:
                    logger.warning(f"Could not delete blob {locator} of job {job.processing_id}: {e}")
        if expired:
            logger.info(f"Purged {len(expired)} terminal jobs")
        return len(expired)

    def purge_scratch_files(self, now: datetime) -> int:
        if self._scratch_dir is None or not self._scratch_dir.is_dir():
            logger.debug(f"Scratch directory {self._scratch_dir} absent, skipping")
            return 0

        cutoff = (now - self._scratch_retention).replace(tzinfo=timezone.utc).timestamp()
        removed = 0
        for path in self._scratch_dir.glob(SCRATCH_PATTERN):
            try:
                if path.is_file() and path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
        if removed:
            logger.info(f"Removed {removed} scratch files from {self._scratch_dir}")
        return removed

    def recover_stalled_jobs(self, now: datetime) -> int:
        """
        Fail (or requeue, if retries remain) jobs whose worker never finished.

        A job whose operation still heartbeats inside the window is left to
        its worker, however long ago it was claimed.
        """
        if self._controller is None:
            return 0
        cutoff = now - self._stalled_after
        stalled = self._queue.stalled(cutoff, heartbeat_before=cutoff)
        for job in stalled:
            self._controller.record_failure(job, "Worker stalled", retryable=True)
        if stalled:
            logger.warning(f"Recovered {len(stalled)} stalled jobs")
        return len(stalled)

    def expire_operations(self, now: datetime) -> int:
        return self._tracker.expire_stale(now)

    def purge_operations(self, now: datetime) -> int:
        return self._tracker.purge_terminal(now - self._operation_retention)

    def purge_history(self, now: datetime) -> int:
        return self._history.purge_before(now - self._history_retention)

    def rollover_accounts(self, now: datetime) -> int:
        return self._ledger.rollover_idle_accounts()

    def sweep(self) -> SweepReport:
        """Run every pass once and report what each changed."""
        now = self._clock()
        report = SweepReport(started_at=now)
        passes: list[tuple[str, Callable[[datetime], int]]] = [
            ("stalled_jobs_recovered", self.recover_stalled_jobs),
            ("jobs_purged", self.purge_jobs),
            ("scratch_files_removed", self.purge_scratch_files),
            ("operations_expired", self.expire_operations),
            ("operations_purged", self.purge_operations),
            ("history_purged", self.purge_history),
            ("accounts_rolled_over", self.rollover_accounts),
        ]
        for name, run_pass in passes:
            try:
                report.counts[name] = run_pass(now)
            except Exception as e:
                logger.error(f"Reaper pass {name} failed: {e}")
                report.counts[name] = 0
                report.errors[name] = str(e)

        logger.info(f"Sweep finished: {report.counts}")
        return report
