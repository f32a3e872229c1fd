"""SQLAlchemy models for the docqueue database."""

from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, Date, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from docqueue.db.base import Base, utcnow
from docqueue.states import HistoryStatus, JobStatus, OperationStatus, OperationType, Plan


def _values(enum_cls: type) -> list[str]:
    return [member.value for member in enum_cls]


def _enum_column(enum_cls: type) -> Enum:
    return Enum(enum_cls, native_enum=False, length=20, values_callable=_values)


class Job(Base):
    """A unit of requested document-processing work, queued or in flight."""

    __tablename__ = "jobs"

    processing_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    # Plan the submitter held; gates the quota when the job is served
    plan: Mapped[Optional[Plan]] = mapped_column(_enum_column(Plan), nullable=True)
    blob_locator: Mapped[str] = mapped_column(String(1024), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(512), nullable=False)
    options: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        _enum_column(JobStatus), default=JobStatus.QUEUED, nullable=False
    )

    # Ordering key within a priority tier; reset when a failed job is requeued
    queued_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)

    __table_args__ = (
        Index("ix_jobs_queue_order", "status", "priority", "queued_at"),
        Index("ix_jobs_status_completed", "status", "completed_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "processing_id": self.processing_id,
            "original_filename": self.original_filename,
            "status": self.status.value,
            "priority": self.priority,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "retry_count": self.retry_count,
            "error_message": self.error_message,
        }


class QuotaAccount(Base):
    """Per-owner usage counters; the single row every usage update locks."""

    __tablename__ = "quota_accounts"

    owner_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    plan: Mapped[Plan] = mapped_column(_enum_column(Plan), default=Plan.FREE, nullable=False)
    usage_this_week: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    week_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    usage_this_month: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    month_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_pages_processed: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    last_processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Operation(Base):
    """Progress record for one in-flight long-running transform."""

    __tablename__ = "operations"

    operation_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    processing_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    operation_type: Mapped[OperationType] = mapped_column(
        _enum_column(OperationType), default=OperationType.TRANSFORM, nullable=False
    )
    status: Mapped[OperationStatus] = mapped_column(
        _enum_column(OperationStatus), default=OperationStatus.RUNNING, nullable=False
    )
    progress_percent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    current_page: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_pages: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict, nullable=False)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_heartbeat_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    check_interval_seconds: Mapped[int] = mapped_column(Integer, default=30, nullable=False)

    __table_args__ = (Index("ix_operations_status_heartbeat", "status", "last_heartbeat_at"),)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "processing_id": self.processing_id,
            "operation_type": self.operation_type.value,
            "status": self.status.value,
            "progress_percent": self.progress_percent,
            "current_page": self.current_page,
            "total_pages": self.total_pages,
            "metadata": self.metadata_json or {},
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "last_heartbeat_at": _iso(self.last_heartbeat_at),
            "check_interval_seconds": self.check_interval_seconds,
        }


class HistoryRecord(Base):
    """Immutable record of a finished job; the system of record for usage."""

    __tablename__ = "processing_history"

    processing_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(512), nullable=False)
    page_count: Mapped[int] = mapped_column(Integer, nullable=False)
    file_size_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    processing_options: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[HistoryStatus] = mapped_column(_enum_column(HistoryStatus), nullable=False)
    document_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    processing_duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processed_locator: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (Index("ix_history_owner_completed", "owner_id", "completed_at"),)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processing_id": self.processing_id,
            "original_filename": self.original_filename,
            "page_count": self.page_count,
            "file_size_bytes": self.file_size_bytes,
            "status": self.status.value,
            "document_type": self.document_type,
            "processing_duration_ms": self.processing_duration_ms,
            "processed_locator": self.processed_locator,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
