"""
Admission controller.

Decides whether a submitted job runs now or waits in the queue, gates it on
the owner's quota and owns the commit step shared with the queue worker:
ledger increment, history insert and job completion in one transaction.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from docqueue.blobs import BlobStore
from docqueue.db.manager import DatabaseManager
from docqueue.db.models import Job
from docqueue.engine import ProgressCallback, TransformEngine, TransformOutput
from docqueue.errors import (
    DocQueueError,
    InvalidTransition,
    NotFound,
    PersistenceError,
    QuotaExceeded,
    TransformFailure,
    ValidationError,
)
from docqueue.history import HistoryStore
from docqueue.ledger.ledger import QuotaLedger, UsageSnapshot
from docqueue.progress.tracker import ProgressTracker
from docqueue.queue.store import PriorityQueueStore
from docqueue.security import CallerIdentity
from docqueue.states import HistoryStatus, JobStatus, OperationType, Plan, Priority, Tier

logger = logging.getLogger(__name__)

KNOWN_OPTIONS = frozenset({"auto_rotate", "deskew", "compress", "ocr", "classify"})


@dataclass
class JobRequest:
    """A caller's request to process one stored document."""

    blob_locator: str
    original_filename: str
    options: dict[str, Any] = field(default_factory=dict)
    processing_id: str | None = None

    def validate(self) -> None:
        """
        Raises:
            ValidationError: If a required field is missing or an option is unknown
        """
        if not self.blob_locator or not self.blob_locator.strip():
            raise ValidationError("blob_locator is required")
        if not self.original_filename or not self.original_filename.strip():
            raise ValidationError("original_filename is required")
        if not isinstance(self.options, dict):
            raise ValidationError("options must be a mapping")
        unknown = set(self.options) - KNOWN_OPTIONS
        if unknown:
            raise ValidationError(f"Unknown options: {', '.join(sorted(unknown))}")
        for name, value in self.options.items():
            if not isinstance(value, bool):
                raise ValidationError(f"Option {name} must be a boolean")
        if self.processing_id is not None and not self.processing_id.strip():
            raise ValidationError("processing_id must not be blank")


@dataclass
class Immediate:
    """The job ran synchronously and has been committed."""

    processing_id: str
    result: dict[str, Any]
    usage: UsageSnapshot

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": "immediate",
            "processing_id": self.processing_id,
            "result": self.result,
            "usage": self.usage.to_dict(),
        }


@dataclass
class Queued:
    """The job is waiting; position 1 is next to be served."""

    processing_id: str
    position: int
    eta_seconds: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": "queued",
            "processing_id": self.processing_id,
            "position": self.position,
            "eta_seconds": self.eta_seconds,
        }


@dataclass
class FetchedDocument:
    data: bytes
    page_count: int

    @property
    def size(self) -> int:
        return len(self.data)


class AdmissionController:
    """Immediate-vs-queued decision, quota gate and the shared commit step."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        queue: PriorityQueueStore,
        ledger: QuotaLedger,
        history: HistoryStore,
        tracker: ProgressTracker,
        engine: TransformEngine,
        blobs: BlobStore,
        max_concurrent_jobs: int = 4,
        default_max_retries: int = 3,
    ) -> None:
        self._db = db_manager
        self._queue = queue
        self._ledger = ledger
        self._history = history
        self._tracker = tracker
        self._engine = engine
        self._blobs = blobs
        self._max_concurrent_jobs = max_concurrent_jobs
        self._default_max_retries = default_max_retries

    @property
    def queue(self) -> PriorityQueueStore:
        return self._queue

    @property
    def ledger(self) -> QuotaLedger:
        return self._ledger

    @property
    def tracker(self) -> ProgressTracker:
        return self._tracker

    @property
    def engine(self) -> TransformEngine:
        return self._engine

    def fetch(self, blob_locator: str) -> FetchedDocument:
        """
        Load a document and count its pages.

        Raises:
            ValidationError: If the blob is missing or not a readable document
        """
        try:
            data = self._blobs.get(blob_locator)
        except NotFound as e:
            raise ValidationError(f"Document not found: {blob_locator}") from e
        return FetchedDocument(data=data, page_count=self._engine.count_pages(data))

    def _should_queue(self, tier: Tier, session) -> bool:
        if self._queue.count_processing(session=session) >= self._max_concurrent_jobs:
            return True
        if tier is Tier.STANDARD:
            return self._queue.has_processing(Priority.ELEVATED, session=session)
        return False

    def submit(self, request: JobRequest, caller: CallerIdentity) -> Immediate | Queued:
        """
        Admit a job.

        Raises:
            ValidationError: If the request or document is invalid
            QuotaExceeded: If the document would push the owner past their limit
            TransformFailure: If the immediate transform failed
            PersistenceError: If the store failed
        """
        request.validate()
        processing_id = request.processing_id or uuid.uuid4().hex
        document = self.fetch(request.blob_locator)
        self._ledger.check(caller.owner_id, caller.plan, document.page_count)

        priority = caller.tier.priority
        # One write transaction: the contention check and the insert see the same state
        with self._db.get_session() as session:
            if self._should_queue(caller.tier, session):
                job = self._queue.enqueue(
                    owner_id=caller.owner_id,
                    processing_id=processing_id,
                    blob_locator=request.blob_locator,
                    original_filename=request.original_filename,
                    options=request.options,
                    priority=priority,
                    max_retries=self._default_max_retries,
                    plan=caller.plan,
                    session=session,
                )
                position = self._queue.position(job, session=session)
                return Queued(
                    processing_id=processing_id,
                    position=position,
                    eta_seconds=self._queue.eta_seconds(position),
                )

            job = self._queue.begin_immediate(
                owner_id=caller.owner_id,
                processing_id=processing_id,
                blob_locator=request.blob_locator,
                original_filename=request.original_filename,
                options=request.options,
                priority=priority,
                plan=caller.plan,
                session=session,
            )

        logger.info(f"Running job {processing_id} immediately for {caller.owner_id} ({caller.tier.value})")
        result, usage = self.run(job, document, caller.plan)
        return Immediate(processing_id=processing_id, result=result, usage=usage)

    def progress_callback(self, operation_id: str) -> ProgressCallback:
        """Engine progress hook that forwards to the tracker without failing the transform."""

        def report(percent: int, current_page: int, total_pages: int) -> None:
            try:
                self._tracker.update(
                    operation_id,
                    progress_percent=percent,
                    current_page=current_page,
                    total_pages=total_pages,
                )
            except DocQueueError as e:
                logger.warning(f"Progress report for {operation_id} rejected: {e.message}")

        return report

    def run(self, job: Job, document: FetchedDocument, plan: Plan) -> tuple[dict[str, Any], UsageSnapshot]:
        """
        Transform a job that is already processing and commit the outcome.

        On failure the job, its operation and (for permanent failures) the
        history are updated before the error propagates. A store failure while
        committing counts as a retryable attempt.
        """
        operation = self._tracker.start(
            job.owner_id,
            OperationType.TRANSFORM,
            processing_id=job.processing_id,
            total_pages=document.page_count,
            metadata={"original_filename": job.original_filename, "attempt": job.retry_count + 1},
        )
        started = time.monotonic()
        try:
            output = self._engine.transform(
                document.data,
                job.options or {},
                elevated=job.priority == Priority.ELEVATED,
                progress=self.progress_callback(operation.operation_id),
            )
        except TransformFailure as e:
            self.record_failure(job, e.message, e.retryable, document, operation.operation_id, e.cancelled)
            raise
        except Exception as e:
            logger.exception(f"Transform engine crashed on job {job.processing_id}")
            self.record_failure(job, str(e), True, document, operation.operation_id)
            raise TransformFailure(f"Transform engine error: {e}") from e

        duration_ms = int((time.monotonic() - started) * 1000)
        try:
            return self.commit(job, output, plan, document.size, duration_ms, operation.operation_id)
        except QuotaExceeded as e:
            self.record_failure(job, e.message, False, document, operation.operation_id)
            raise
        except PersistenceError as e:
            logger.error(f"Store failure committing job {job.processing_id}: {e.message}")
            self.record_failure(job, "Internal storage error", True, document, operation.operation_id)
            raise

    def commit(
        self,
        job: Job,
        output: TransformOutput,
        plan: Plan,
        file_size_bytes: int,
        duration_ms: int,
        operation_id: str | None = None,
    ) -> tuple[dict[str, Any], UsageSnapshot]:
        """
        Persist a successful transform as one unit.

        The quota is checked again under the account row lock so concurrent
        jobs for one owner can never commit past the limit together.

        Raises:
            QuotaExceeded: If usage moved past the limit while transforming
            InvalidTransition: If the job is no longer processing
        """
        processed_locator = self._blobs.put(f"processed/{job.processing_id}.pdf", output.data)
        result = {
            "processing_id": job.processing_id,
            "page_count": output.page_count,
            "document_type": output.document_type,
            "processed_locator": processed_locator,
            "processing_duration_ms": duration_ms,
            "metadata": output.metadata,
        }

        try:
            with self._db.get_session() as session:
                self._ledger.check(job.owner_id, plan, output.page_count, session=session)
                usage = self._ledger.record_usage(job.owner_id, output.page_count, session=session)
                self._history.record(
                    processing_id=job.processing_id,
                    owner_id=job.owner_id,
                    original_filename=job.original_filename,
                    page_count=output.page_count,
                    status=HistoryStatus.COMPLETED,
                    file_size_bytes=file_size_bytes,
                    processing_options=job.options,
                    document_type=output.document_type,
                    processing_duration_ms=duration_ms,
                    processed_locator=processed_locator,
                    session=session,
                )
                self._queue.complete(job.processing_id, result, session=session)
        except DocQueueError:
            self._blobs.delete(processed_locator)
            raise

        if operation_id is not None:
            try:
                self._tracker.complete(operation_id, result=result)
            except InvalidTransition as e:
                # Reaper timed the operation out while the transform ran
                logger.warning(f"Operation {operation_id} already finished: {e.message}")

        logger.info(
            f"Committed job {job.processing_id}: {output.page_count} pages for {job.owner_id} "
            f"(week={usage.weekly_usage}, month={usage.monthly_usage})"
        )
        return result, usage

    def record_failure(
        self,
        job: Job,
        error: str,
        retryable: bool,
        document: FetchedDocument | None = None,
        operation_id: str | None = None,
        cancelled: bool = False,
    ) -> Job:
        """
        Record a failed attempt on the job and its operation.

        Returns:
            The job after the failure; queued again when a retry is left
        """
        with self._db.get_session() as session:
            failed = self._queue.fail(job.processing_id, error, retryable=retryable and not cancelled, session=session)
            if failed.status is JobStatus.FAILED:
                self._history.record(
                    processing_id=job.processing_id,
                    owner_id=job.owner_id,
                    original_filename=job.original_filename,
                    page_count=document.page_count if document else 0,
                    status=HistoryStatus.FAILED,
                    file_size_bytes=document.size if document else 0,
                    processing_options=job.options,
                    error_message=error,
                    session=session,
                )

        if operation_id is not None:
            try:
                if cancelled:
                    self._tracker.record_cancellation(operation_id, error)
                else:
                    self._tracker.fail(operation_id, error)
            except InvalidTransition as e:
                logger.warning(f"Operation {operation_id} already finished: {e.message}")
        return failed
