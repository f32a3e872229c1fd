"""
Queue worker.

One invocation processes at most one queued job: dequeue, fetch, quota gate,
transform, commit. It talks to submitters only through the store, so every
failure is recorded on the job instead of being raised.
"""

import logging
from enum import Enum

from docqueue.admission.controller import AdmissionController, FetchedDocument
from docqueue.db.models import Job
from docqueue.errors import (
    Conflict,
    DocQueueError,
    InvalidTransition,
    PersistenceError,
    QuotaExceeded,
    TransformFailure,
    ValidationError,
)
from docqueue.states import JobStatus

logger = logging.getLogger(__name__)


class WorkerOutcome(str, Enum):
    IDLE = "idle"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"


class QueueWorker:
    """Stateless dequeue -> transform -> commit step."""

    def __init__(self, controller: AdmissionController) -> None:
        self._controller = controller

    def process_next(self) -> WorkerOutcome:
        """
        Claim and process the next queued job, if any.

        Returns:
            What happened to the claimed job, or IDLE when there was none
        """
        try:
            job = self._controller.queue.dequeue_next()
        except Conflict as e:
            logger.info(f"Queue claim contended, leaving it for the next run: {e.message}")
            return WorkerOutcome.IDLE
        if job is None:
            return WorkerOutcome.IDLE

        logger.info(f"Processing job {job.processing_id} for {job.owner_id} (priority {job.priority})")

        document: FetchedDocument | None = None
        try:
            document = self._controller.fetch(job.blob_locator)
            plan = job.plan or self._controller.ledger.get_account(job.owner_id).plan
            self._controller.ledger.check(job.owner_id, plan, document.page_count)
        except (ValidationError, QuotaExceeded) as e:
            # Neither a bad document nor an exhausted quota improves on retry
            return self._fail(job, e.message, retryable=False, document=document)
        except PersistenceError as e:
            logger.error(f"Store failure while preparing {job.processing_id}: {e.message}")
            return self._fail(job, "Internal storage error", retryable=True, document=document)

        try:
            self._controller.run(job, document, plan)
        except (TransformFailure, QuotaExceeded):
            # run() already recorded the attempt on the job and its operation
            return self._outcome_of(job.processing_id)
        except InvalidTransition as e:
            logger.warning(f"Job {job.processing_id} changed state while processing: {e.message}")
            return self._outcome_of(job.processing_id)
        except PersistenceError as e:
            logger.error(f"Store failure while processing {job.processing_id}: {e.message}")
            if self._status_of(job.processing_id) is JobStatus.PROCESSING:
                # Failed before run() could record the attempt
                return self._fail(job, "Internal storage error", retryable=True, document=document)
            return self._outcome_of(job.processing_id)
        return WorkerOutcome.COMPLETED

    def _status_of(self, processing_id: str) -> JobStatus | None:
        try:
            current = self._controller.queue.get(processing_id)
        except PersistenceError as e:
            logger.error(f"Could not read back job {processing_id}: {e.message}")
            return None
        return current.status if current is not None else None

    def _outcome_of(self, processing_id: str) -> WorkerOutcome:
        status = self._status_of(processing_id)
        if status is JobStatus.QUEUED:
            return WorkerOutcome.RETRYING
        if status is JobStatus.COMPLETED:
            return WorkerOutcome.COMPLETED
        return WorkerOutcome.FAILED

    def _fail(
        self,
        job: Job,
        error: str,
        retryable: bool,
        document: FetchedDocument | None,
    ) -> WorkerOutcome:
        try:
            failed = self._controller.record_failure(job, error, retryable, document)
        except DocQueueError as e:
            logger.error(f"Could not record failure of {job.processing_id}: {e.message}")
            return WorkerOutcome.FAILED
        if failed.status is JobStatus.QUEUED:
            return WorkerOutcome.RETRYING
        return WorkerOutcome.FAILED

    def drain(self, max_jobs: int = 10) -> dict[WorkerOutcome, int]:
        """Process queued jobs until the queue is empty or max_jobs were handled."""
        counts = {outcome: 0 for outcome in WorkerOutcome}
        for _ in range(max_jobs):
            outcome = self.process_next()
            counts[outcome] += 1
            if outcome is WorkerOutcome.IDLE:
                break
        return counts
