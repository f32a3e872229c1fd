"""
Progress tracking for long-running transforms.

An Operation is created when a transform starts, heartbeats on every accepted
progress update and ends completed, failed or cancelled. Progress only moves
forward: a report lower than the stored percentage is ignored rather than
applied.
"""

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from docqueue.db.base import utcnow
from docqueue.db.manager import DatabaseManager
from docqueue.db.models import Operation
from docqueue.errors import InvalidTransition, NotFound, OperationTimeout, ValidationError
from docqueue.history import HistoryStore
from docqueue.queue.store import PriorityQueueStore
from docqueue.states import HistoryStatus, JobStatus, OperationStatus, OperationType

logger = logging.getLogger(__name__)


@dataclass
class ProgressUpdate:
    """Outcome of a progress report."""

    operation_id: str
    accepted: bool
    status: str
    progress_percent: int
    current_page: int
    total_pages: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ProgressTracker:
    """Operation state machine plus the caller-facing status views."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        queue: PriorityQueueStore,
        history: HistoryStore,
        stale_after: timedelta = timedelta(hours=2),
        check_interval_seconds: int = 30,
        recent_history_limit: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize the tracker.

        Args:
            db_manager: Database manager owning the shared store
            queue: Queue store used for positions in the status views
            history: History store used for the recent-history view
            stale_after: Heartbeat age after which a running operation times out
            check_interval_seconds: Polling hint stored on new operations
            recent_history_limit: Number of history rows in the aggregated view
            clock: Source of the current UTC time
        """
        self._db = db_manager
        self._queue = queue
        self._history = history
        self._stale_after = stale_after
        self._check_interval = check_interval_seconds
        self._recent_history_limit = recent_history_limit
        self._clock = clock

    def start(
        self,
        owner_id: str,
        operation_type: OperationType = OperationType.TRANSFORM,
        processing_id: str | None = None,
        total_pages: int = 0,
        metadata: dict[str, Any] | None = None,
        session: Session | None = None,
    ) -> Operation:
        """Create a running operation with 0% progress."""
        if total_pages < 0:
            raise ValidationError("total_pages must be non-negative")

        now = self._clock()
        operation = Operation(
            operation_id=uuid.uuid4().hex,
            owner_id=owner_id,
            processing_id=processing_id,
            operation_type=operation_type,
            status=OperationStatus.RUNNING,
            progress_percent=0,
            current_page=0,
            total_pages=total_pages,
            metadata_json=dict(metadata or {}),
            created_at=now,
            last_heartbeat_at=now,
            check_interval_seconds=self._check_interval,
        )
        with self._db.session_scope(session) as s:
            s.add(operation)
            s.flush()
        logger.debug(f"Started {operation_type.value} operation {operation.operation_id} for {owner_id}")
        return operation

    def _get_for_update(self, session: Session, operation_id: str) -> Operation:
        stmt = select(Operation).where(Operation.operation_id == operation_id)
        if self._db.supports_row_locks:
            stmt = stmt.with_for_update()
        operation = session.scalars(stmt).first()
        if operation is None:
            raise NotFound(f"Operation {operation_id} not found")
        return operation

    def update(
        self,
        operation_id: str,
        progress_percent: int,
        current_page: int | None = None,
        total_pages: int | None = None,
        metadata: dict[str, Any] | None = None,
        session: Session | None = None,
    ) -> ProgressUpdate:
        """
        Report progress on a running operation.

        A lower percentage than the stored one is not applied and does not
        refresh the heartbeat; the result reports ``accepted=False``.

        Raises:
            ValidationError: If the percentage or page numbers are out of range
            InvalidTransition: If the operation is already terminal
            NotFound: If the operation does not exist
        """
        if not 0 <= progress_percent <= 100:
            raise ValidationError(f"progress_percent must be within 0-100, got {progress_percent}")

        with self._db.session_scope(session) as s:
            operation = self._get_for_update(s, operation_id)
            if operation.status.is_terminal:
                raise InvalidTransition(operation.status.value, OperationStatus.RUNNING.value)

            new_total = operation.total_pages if total_pages is None else total_pages
            new_page = operation.current_page if current_page is None else current_page
            if new_page < 0 or new_total < 0:
                raise ValidationError("Page numbers must be non-negative")
            if new_page > new_total:
                raise ValidationError(f"current_page {new_page} exceeds total_pages {new_total}")

            accepted = progress_percent >= operation.progress_percent
            if accepted:
                operation.progress_percent = progress_percent
                operation.current_page = new_page
                operation.total_pages = new_total
                if metadata:
                    operation.metadata_json = {**(operation.metadata_json or {}), **metadata}
                operation.last_heartbeat_at = self._clock()
                s.flush()
            else:
                logger.debug(
                    f"Ignored regressing progress for {operation_id}: "
                    f"{progress_percent} < {operation.progress_percent}"
                )

            return ProgressUpdate(
                operation_id=operation_id,
                accepted=accepted,
                status=operation.status.value,
                progress_percent=operation.progress_percent,
                current_page=operation.current_page,
                total_pages=operation.total_pages,
            )

    def _finish(
        self,
        session: Session,
        operation_id: str,
        status: OperationStatus,
        error: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> Operation:
        operation = self._get_for_update(session, operation_id)
        if operation.status.is_terminal:
            raise InvalidTransition(operation.status.value, status.value)

        now = self._clock()
        operation.status = status
        operation.error_message = error
        operation.completed_at = now
        operation.last_heartbeat_at = now
        if status is OperationStatus.COMPLETED:
            operation.progress_percent = 100
            operation.current_page = operation.total_pages
            operation.result = result or {}
        session.flush()
        return operation

    def complete(
        self,
        operation_id: str,
        result: dict[str, Any] | None = None,
        session: Session | None = None,
    ) -> Operation:
        with self._db.session_scope(session) as s:
            return self._finish(s, operation_id, OperationStatus.COMPLETED, result=result)

    def fail(self, operation_id: str, error: str, session: Session | None = None) -> Operation:
        with self._db.session_scope(session) as s:
            operation = self._finish(s, operation_id, OperationStatus.FAILED, error=error)
        logger.info(f"Operation {operation_id} failed: {error}")
        return operation

    def record_cancellation(
        self, operation_id: str, reason: str, session: Session | None = None
    ) -> Operation:
        """Mark an operation cancelled after the engine reported it gave up."""
        with self._db.session_scope(session) as s:
            operation = self._finish(s, operation_id, OperationStatus.CANCELLED, error=reason)
        logger.info(f"Operation {operation_id} cancelled by engine: {reason}")
        return operation

    def get(self, operation_id: str, owner_id: str | None = None) -> Operation:
        with self._db.get_session() as session:
            operation = session.scalars(
                select(Operation).where(Operation.operation_id == operation_id)
            ).first()
        if operation is None or (owner_id is not None and operation.owner_id != owner_id):
            raise NotFound(f"Operation {operation_id} not found")
        return operation

    def expire_stale(self, now: datetime | None = None) -> int:
        """Fail running operations whose heartbeat is older than the staleness window."""
        now = now or self._clock()
        cutoff = now - self._stale_after
        with self._db.get_session() as session:
            result = session.execute(
                update(Operation)
                .where(
                    Operation.status == OperationStatus.RUNNING,
                    Operation.last_heartbeat_at < cutoff,
                )
                .values(
                    status=OperationStatus.FAILED,
                    error_message=OperationTimeout().message,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            expired = result.rowcount or 0

        if expired:
            logger.warning(f"Timed out {expired} stale operations (no heartbeat since {cutoff.isoformat()})")
        return expired

    def purge_terminal(self, older_than: datetime) -> int:
        """Delete finished operations whose completion is before the cutoff."""
        terminal = [OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.CANCELLED]
        with self._db.get_session() as session:
            result = session.execute(
                delete(Operation)
                .where(Operation.status.in_(terminal), Operation.completed_at < older_than)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    def get_aggregated_status(self, owner_id: str) -> dict[str, Any]:
        """
        Everything a polling client needs about the owner's work.

        Returns:
            Dict with active operations, queued items (with position and
            ETA), processing items, recent history and summary counts
        """
        with self._db.get_session() as session:
            operations = session.scalars(
                select(Operation)
                .where(Operation.owner_id == owner_id, Operation.status == OperationStatus.RUNNING)
                .order_by(Operation.created_at.desc())
            ).all()
            jobs = self._queue.list_for_owner(owner_id, session=session)

            queued_items = []
            for job in jobs:
                if job.status is not JobStatus.QUEUED:
                    continue
                position = self._queue.position(job, session=session)
                item = job.to_dict()
                item["queue_position"] = position
                item["estimated_wait_seconds"] = self._queue.eta_seconds(position)
                queued_items.append(item)

            processing_items = [job.to_dict() for job in jobs if job.status is JobStatus.PROCESSING]
            recent = self._history.recent_for_owner(
                owner_id, limit=self._recent_history_limit, session=session
            )

            return {
                "active_operations": [op.to_dict() for op in operations],
                "queue_items": queued_items,
                "processing_items": processing_items,
                "recent_history": [record.to_dict() for record in recent],
                "summary": {
                    "total_active": len(operations),
                    "total_queued": len(queued_items),
                    "total_processing": len(processing_items),
                    "estimated_total_wait": sum(i["estimated_wait_seconds"] for i in queued_items),
                },
            }

    def get_job_progress(self, owner_id: str, processing_id: str) -> dict[str, Any]:
        """
        Merged view of one job: history outcome, live operation, queue position.

        Raises:
            NotFound: If nothing is known about the job or it belongs to someone else
        """
        with self._db.get_session() as session:
            job = self._queue.get(processing_id, session=session)
            record = self._history.get(processing_id, session=session)
            owners = {row.owner_id for row in (job, record) if row is not None}
            if not owners or owners != {owner_id}:
                raise NotFound(f"Processing ID {processing_id} not found")

            progress: dict[str, Any] = {"processing_id": processing_id}
            if job is not None:
                progress.update(
                    {
                        "status": job.status.value,
                        "original_filename": job.original_filename,
                        "retry_count": job.retry_count,
                        "error_message": job.error_message,
                    }
                )
            if record is not None:
                progress.update(
                    {
                        "status": record.status.value,
                        "original_filename": record.original_filename,
                        "page_count": record.page_count,
                        "document_type": record.document_type,
                        "processing_duration_ms": record.processing_duration_ms,
                        "error_message": record.error_message,
                        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
                    }
                )
                if record.status is HistoryStatus.COMPLETED:
                    progress["progress_percent"] = 100

            operation = session.scalars(
                select(Operation)
                .where(
                    Operation.processing_id == processing_id,
                    Operation.owner_id == owner_id,
                    Operation.status == OperationStatus.RUNNING,
                )
                .order_by(Operation.created_at.desc())
                .limit(1)
            ).first()
            if operation is not None:
                progress.update(
                    {
                        "operation_id": operation.operation_id,
                        "operation_type": operation.operation_type.value,
                        "progress_percent": operation.progress_percent,
                        "current_page": operation.current_page,
                        "total_pages": operation.total_pages,
                        "metadata": operation.metadata_json or {},
                        "last_updated": operation.last_heartbeat_at.isoformat(),
                    }
                )

            if job is not None and job.status is JobStatus.QUEUED:
                position = self._queue.position(job, session=session)
                progress.update(
                    {
                        "queue_position": position,
                        "estimated_wait_seconds": self._queue.eta_seconds(position),
                        "priority": job.priority,
                        "queued_at": job.queued_at.isoformat(),
                    }
                )
            return progress
