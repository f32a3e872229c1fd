"""Exception hierarchy shared by the admission, queue, ledger and progress layers."""

from typing import Any


class DocQueueError(Exception):
    """Base exception for docqueue errors."""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error_code, "message": self.message}


class ValidationError(DocQueueError):
    """Raised when a request or update is malformed."""

    status_code = 400
    error_code = "validation_error"


class AuthenticationError(DocQueueError):
    """Raised when a bearer credential is missing or not recognised."""

    status_code = 401
    error_code = "authentication_error"


class QuotaExceeded(DocQueueError):
    """Raised when a job would push the owner past their tier limit."""

    status_code = 403
    error_code = "quota_exceeded"

    def __init__(self, current: int, limit: int, requested: int, period: str = "week") -> None:
        self.current = current
        self.limit = limit
        self.requested = requested
        self.period = period
        super().__init__(
            f"{period.capitalize()}ly page limit exceeded: "
            f"{current} used + {requested} requested > {limit}"
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "current_usage": self.current,
                "limit": self.limit,
                "requested": self.requested,
                "period": self.period,
            }
        )
        return data


class NotFound(DocQueueError):
    """Raised when a job or operation is absent or not owned by the caller."""

    status_code = 404
    error_code = "not_found"


class InvalidTransition(DocQueueError):
    """Raised when a state machine transition is not allowed."""

    status_code = 409
    error_code = "invalid_transition"

    def __init__(self, current_status: str, target_status: str) -> None:
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(f"Cannot transition from {current_status} to {target_status}")


class Conflict(DocQueueError):
    """Raised when a row was claimed or locked by a concurrent writer."""

    status_code = 409
    error_code = "conflict"


class TransformFailure(DocQueueError):
    """Raised when the transform engine rejects or fails on a document."""

    status_code = 502
    error_code = "transform_failed"

    def __init__(self, message: str, retryable: bool = True, cancelled: bool = False) -> None:
        self.retryable = retryable
        self.cancelled = cancelled
        super().__init__(message)


class PersistenceError(DocQueueError):
    """Raised when the backing store fails; callers only see a generic message."""

    status_code = 500
    error_code = "persistence_error"

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error_code, "message": "Internal storage error"}


class OperationTimeout(DocQueueError):
    """Recorded on operations the reaper force-fails after a missed heartbeat."""

    status_code = 504
    error_code = "operation_timeout"

    def __init__(self, message: str = "Operation timed out") -> None:
        super().__init__(message)


class RateLimited(DocQueueError):
    """Raised when a caller has used up the current rate-limit window."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, policy: str, retry_after: float | None, headers: dict[str, str] | None = None) -> None:
        self.policy = policy
        self.retry_after = retry_after
        self.headers = headers or {}
        super().__init__(f"Too many {policy} requests, try again later")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data
