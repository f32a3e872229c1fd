"""Status, plan and priority enumerations."""

from enum import Enum, IntEnum


class JobStatus(str, Enum):
    """Lifecycle of a queue row."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class OperationStatus(str, Enum):
    """Lifecycle of a tracked long-running transform."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not OperationStatus.RUNNING


class OperationType(str, Enum):
    TRANSFORM = "transform"
    DOCUMENT_TEXT = "document_text"
    CLASSIFICATION = "classification"


class HistoryStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class Tier(str, Enum):
    """Service class that drives scheduling priority and quota period."""

    ELEVATED = "elevated"
    STANDARD = "standard"

    @property
    def priority(self) -> "Priority":
        return Priority.ELEVATED if self is Tier.ELEVATED else Priority.STANDARD


class Plan(str, Enum):
    """Billing plan stored on a quota account."""

    FREE = "free"
    PRO_MONTHLY = "pro_monthly"
    PRO_ANNUAL = "pro_annual"

    @property
    def tier(self) -> Tier:
        return Tier.STANDARD if self is Plan.FREE else Tier.ELEVATED


class Priority(IntEnum):
    """Queue priority; lower values are served first."""

    ELEVATED = 1
    STANDARD = 2
