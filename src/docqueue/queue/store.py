"""
Durable priority queue of document-processing jobs.

Service order is (priority ASC, queued_at ASC), with the insertion id
breaking exact timestamp ties. Claims are made with a conditional UPDATE so
that exactly one worker wins a given row, whatever the backend.
"""

import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from docqueue.db.base import utcnow
from docqueue.db.manager import DatabaseManager
from docqueue.db.models import Job, Operation
from docqueue.errors import Conflict, InvalidTransition, NotFound, ValidationError
from docqueue.states import JobStatus, OperationStatus, Plan, Priority

logger = logging.getLogger(__name__)

QUEUE_ORDER = (Job.priority.asc(), Job.queued_at.asc(), Job.id.asc())


class PriorityQueueStore:
    """
    Queue rows for pending and active jobs.

    Every method opens its own transaction unless a session is passed in,
    in which case it joins that unit of work.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        average_job_seconds: int = 30,
        max_claim_attempts: int = 5,
    ) -> None:
        """
        Initialize the queue store.

        Args:
            db_manager: Database manager owning the shared store
            average_job_seconds: ETA contribution of each queue position
            max_claim_attempts: Claim retries when a concurrent worker wins
        """
        self._db = db_manager
        self._average_job_seconds = average_job_seconds
        self._max_claim_attempts = max_claim_attempts

    def _insert(
        self,
        session: Session,
        status: JobStatus,
        owner_id: str,
        processing_id: str,
        blob_locator: str,
        original_filename: str,
        options: dict[str, Any],
        priority: Priority,
        max_retries: int,
        plan: Plan | None,
    ) -> Job:
        existing = session.scalar(select(Job.id).where(Job.processing_id == processing_id))
        if existing is not None:
            raise ValidationError(f"Processing ID already submitted: {processing_id}")

        now = utcnow()
        job = Job(
            processing_id=processing_id,
            owner_id=owner_id,
            priority=int(priority),
            plan=plan,
            blob_locator=blob_locator,
            original_filename=original_filename,
            options=dict(options),
            status=status,
            created_at=now,
            queued_at=now,
            started_at=now if status is JobStatus.PROCESSING else None,
            max_retries=max_retries,
        )
        session.add(job)
        session.flush()
        return job

    def enqueue(
        self,
        owner_id: str,
        processing_id: str,
        blob_locator: str,
        original_filename: str,
        options: dict[str, Any] | None = None,
        priority: Priority = Priority.STANDARD,
        max_retries: int = 3,
        plan: Plan | None = None,
        session: Session | None = None,
    ) -> Job:
        """Insert a job in the queued state at the back of its tier."""
        with self._db.session_scope(session) as s:
            job = self._insert(
                s, JobStatus.QUEUED, owner_id, processing_id, blob_locator,
                original_filename, options or {}, priority, max_retries, plan,
            )
        logger.info(f"Queued job {processing_id} for {owner_id} (priority {int(priority)})")
        return job

    def begin_immediate(
        self,
        owner_id: str,
        processing_id: str,
        blob_locator: str,
        original_filename: str,
        options: dict[str, Any] | None = None,
        priority: Priority = Priority.STANDARD,
        max_retries: int = 0,
        plan: Plan | None = None,
        session: Session | None = None,
    ) -> Job:
        """Insert a job that skips the queue and is already processing."""
        with self._db.session_scope(session) as s:
            return self._insert(
                s, JobStatus.PROCESSING, owner_id, processing_id, blob_locator,
                original_filename, options or {}, priority, max_retries, plan,
            )

    def dequeue_next(self) -> Job | None:
        """
        Claim the lowest-ordered queued job and mark it processing.

        Returns:
            The claimed job, or None when the queue is empty

        Raises:
            Conflict: If every attempt lost the race to another worker
        """
        for attempt in range(1, self._max_claim_attempts + 1):
            with self._db.get_session() as session:
                stmt = select(Job).where(Job.status == JobStatus.QUEUED).order_by(*QUEUE_ORDER).limit(1)
                if self._db.supports_row_locks:
                    stmt = stmt.with_for_update(skip_locked=True)
                candidate = session.scalars(stmt).first()
                if candidate is None:
                    return None

                now = utcnow()
                claimed = session.execute(
                    update(Job)
                    .where(Job.id == candidate.id, Job.status == JobStatus.QUEUED)
                    .values(status=JobStatus.PROCESSING, started_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 1:
                    session.refresh(candidate)
                    logger.info(
                        f"Claimed job {candidate.processing_id} "
                        f"(priority {candidate.priority}, attempt {attempt})"
                    )
                    return candidate

            logger.debug(f"Lost claim race for job {candidate.processing_id}, retrying")

        raise Conflict("Could not claim a queued job after repeated contention")

    def _get_for_update(self, session: Session, processing_id: str) -> Job:
        stmt = select(Job).where(Job.processing_id == processing_id)
        if self._db.supports_row_locks:
            stmt = stmt.with_for_update()
        job = session.scalars(stmt).first()
        if job is None:
            raise NotFound(f"Job {processing_id} not found")
        return job

    def complete(
        self,
        processing_id: str,
        result: dict[str, Any] | None = None,
        session: Session | None = None,
    ) -> Job:
        """Transition processing -> completed and store the result."""
        with self._db.session_scope(session) as s:
            job = self._get_for_update(s, processing_id)
            if job.status is not JobStatus.PROCESSING:
                raise InvalidTransition(job.status.value, JobStatus.COMPLETED.value)
            job.status = JobStatus.COMPLETED
            job.result = result or {}
            job.error_message = None
            job.completed_at = utcnow()
            s.flush()
            return job

    def fail(
        self,
        processing_id: str,
        error: str,
        retryable: bool = True,
        session: Session | None = None,
    ) -> Job:
        """
        Record a failure on a processing job.

        A retryable failure with retries left puts the job back at the end
        of its priority tier; anything else fails it permanently.
        """
        with self._db.session_scope(session) as s:
            job = self._get_for_update(s, processing_id)
            if job.status is not JobStatus.PROCESSING:
                raise InvalidTransition(job.status.value, JobStatus.FAILED.value)

            job.error_message = error
            if retryable and job.retry_count < job.max_retries:
                job.retry_count += 1
                job.status = JobStatus.QUEUED
                job.queued_at = utcnow()
                job.started_at = None
                logger.warning(
                    f"Job {processing_id} failed ({error}); requeued "
                    f"(retry {job.retry_count}/{job.max_retries})"
                )
            else:
                job.status = JobStatus.FAILED
                job.completed_at = utcnow()
                logger.warning(f"Job {processing_id} failed permanently: {error}")
            s.flush()
            return job

    def get(self, processing_id: str, session: Session | None = None) -> Job | None:
        with self._db.session_scope(session) as s:
            return s.scalars(select(Job).where(Job.processing_id == processing_id)).first()

    def jobs_ahead(self, job: Job, session: Session | None = None) -> int:
        """Count queued jobs ordered strictly before the given one."""
        before = or_(
            Job.priority < job.priority,
            and_(
                Job.priority == job.priority,
                or_(
                    Job.queued_at < job.queued_at,
                    and_(Job.queued_at == job.queued_at, Job.id < job.id),
                ),
            ),
        )
        with self._db.session_scope(session) as s:
            return s.scalar(
                select(func.count(Job.id)).where(Job.status == JobStatus.QUEUED, before)
            ) or 0

    def position(self, job: Job, session: Session | None = None) -> int:
        """1-based position of a queued job; the head of the queue is 1."""
        return self.jobs_ahead(job, session=session) + 1

    def eta_seconds(self, position: int) -> int:
        return position * self._average_job_seconds

    def list_for_owner(
        self,
        owner_id: str,
        statuses: Iterable[JobStatus] = (JobStatus.QUEUED, JobStatus.PROCESSING),
        session: Session | None = None,
    ) -> list[Job]:
        with self._db.session_scope(session) as s:
            stmt = (
                select(Job)
                .where(Job.owner_id == owner_id, Job.status.in_(list(statuses)))
                .order_by(Job.created_at.desc())
            )
            return list(s.scalars(stmt))

    def count_processing(self, priority: Priority | None = None, session: Session | None = None) -> int:
        with self._db.session_scope(session) as s:
            stmt = select(func.count(Job.id)).where(Job.status == JobStatus.PROCESSING)
            if priority is not None:
                stmt = stmt.where(Job.priority == int(priority))
            return s.scalar(stmt) or 0

    def has_processing(self, priority: Priority, session: Session | None = None) -> bool:
        return self.count_processing(priority, session=session) > 0

    def stalled(
        self,
        started_before: datetime,
        heartbeat_before: datetime | None = None,
        session: Session | None = None,
    ) -> list[Job]:
        """
        Processing jobs claimed before the cutoff whose worker is presumed dead.

        A job whose transform operation is still running with a heartbeat at
        or after ``heartbeat_before`` (default: ``started_before``) is alive
        and never returned.
        """
        heartbeat_before = heartbeat_before or started_before
        alive = (
            select(Operation.id)
            .where(
                Operation.processing_id == Job.processing_id,
                Operation.status == OperationStatus.RUNNING,
                Operation.last_heartbeat_at >= heartbeat_before,
            )
            .exists()
        )
        with self._db.session_scope(session) as s:
            stmt = (
                select(Job)
                .where(Job.status == JobStatus.PROCESSING, Job.started_at < started_before, ~alive)
                .order_by(*QUEUE_ORDER)
            )
            return list(s.scalars(stmt))

    def purge_terminal(self, older_than: datetime, session: Session | None = None) -> list[Job]:
        """
        Delete completed/failed jobs whose terminal timestamp is before the cutoff.

        Returns:
            The deleted rows, so callers can release the blobs they reference
        """
        with self._db.session_scope(session) as s:
            expired = list(
                s.scalars(
                    select(Job).where(
                        Job.status.in_([JobStatus.COMPLETED, JobStatus.FAILED]),
                        Job.completed_at < older_than,
                    )
                )
            )
            if expired:
                s.execute(
                    delete(Job)
                    .where(Job.id.in_([job.id for job in expired]))
                    .execution_options(synchronize_session=False)
                )
            return expired
