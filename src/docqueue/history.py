"""Processing history: the durable record of every finished job."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from docqueue.db.base import utcnow
from docqueue.db.manager import DatabaseManager
from docqueue.db.models import HistoryRecord
from docqueue.states import HistoryStatus

logger = logging.getLogger(__name__)


class HistoryStore:
    """Writes and queries HistoryRecord rows."""

    def __init__(self, db_manager: DatabaseManager) -> None:
        self._db = db_manager

    def record(
        self,
        processing_id: str,
        owner_id: str,
        original_filename: str,
        page_count: int,
        status: HistoryStatus,
        file_size_bytes: int = 0,
        processing_options: dict[str, Any] | None = None,
        document_type: str | None = None,
        processing_duration_ms: int | None = None,
        processed_locator: str | None = None,
        error_message: str | None = None,
        session: Session | None = None,
    ) -> HistoryRecord:
        """Insert the terminal record for a job."""
        now = utcnow()
        record = HistoryRecord(
            processing_id=processing_id,
            owner_id=owner_id,
            original_filename=original_filename,
            page_count=page_count,
            file_size_bytes=file_size_bytes,
            processing_options=dict(processing_options or {}),
            status=status,
            document_type=document_type,
            processing_duration_ms=processing_duration_ms,
            processed_locator=processed_locator,
            error_message=error_message,
            created_at=now,
            completed_at=now,
        )
        with self._db.session_scope(session) as s:
            s.add(record)
            s.flush()
        return record

    def get(self, processing_id: str, session: Session | None = None) -> HistoryRecord | None:
        with self._db.session_scope(session) as s:
            return s.scalars(
                select(HistoryRecord).where(HistoryRecord.processing_id == processing_id)
            ).first()

    def recent_for_owner(
        self, owner_id: str, limit: int = 5, session: Session | None = None
    ) -> list[HistoryRecord]:
        with self._db.session_scope(session) as s:
            stmt = (
                select(HistoryRecord)
                .where(HistoryRecord.owner_id == owner_id)
                .order_by(HistoryRecord.created_at.desc(), HistoryRecord.id.desc())
                .limit(limit)
            )
            return list(s.scalars(stmt))

    def completed_pages(
        self,
        owner_id: str,
        since: datetime | None = None,
        session: Session | None = None,
    ) -> int:
        """Sum page counts of completed records, optionally from a cutoff on."""
        stmt = select(func.coalesce(func.sum(HistoryRecord.page_count), 0)).where(
            HistoryRecord.owner_id == owner_id,
            HistoryRecord.status == HistoryStatus.COMPLETED,
        )
        if since is not None:
            stmt = stmt.where(HistoryRecord.completed_at >= since)
        with self._db.session_scope(session) as s:
            return int(s.scalar(stmt) or 0)

    def purge_before(self, cutoff: datetime, session: Session | None = None) -> int:
        """Delete records created before the cutoff; returns the number removed."""
        with self._db.session_scope(session) as s:
            result = s.execute(
                delete(HistoryRecord)
                .where(HistoryRecord.created_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Purged {deleted} history records older than {cutoff.isoformat()}")
        return deleted
