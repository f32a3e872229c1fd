"""
Response models for the docqueue API.
"""

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class SubmitResult:
    """Outcome of a job submission: ran immediately or was queued."""

    processing_id: str
    mode: str
    position: Optional[int] = None
    eta_seconds: Optional[int] = None
    result: dict[str, Any] = field(default_factory=dict)
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def queued(self) -> bool:
        return self.mode == "queued"

    @classmethod
    def from_dict(cls, data: dict) -> "SubmitResult":
        return cls(
            processing_id=data.get("processing_id", ""),
            mode=data.get("mode", ""),
            position=data.get("position"),
            eta_seconds=data.get("eta_seconds"),
            result=data.get("result") or {},
            usage=data.get("usage") or {},
        )


@dataclass
class JobProgress:
    """Merged view of one job: queue row, running operation and history."""

    processing_id: str
    status: str
    progress_percent: int = 0
    current_page: Optional[int] = None
    total_pages: Optional[int] = None
    queue_position: Optional[int] = None
    estimated_wait_seconds: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status in ("completed", "failed")

    @classmethod
    def from_dict(cls, data: dict) -> "JobProgress":
        return cls(
            processing_id=data.get("processing_id", ""),
            status=data.get("status", "unknown"),
            progress_percent=data.get("progress_percent") or 0,
            current_page=data.get("current_page"),
            total_pages=data.get("total_pages"),
            queue_position=data.get("queue_position"),
            estimated_wait_seconds=data.get("estimated_wait_seconds"),
            error_message=data.get("error_message"),
        )


@dataclass
class UsageStats:
    """Quota usage of the calling account."""

    plan: str
    weekly_usage: int
    monthly_usage: int
    lifetime_total: int
    limit: int
    limit_period: str
    remaining: int

    @classmethod
    def from_dict(cls, data: dict) -> "UsageStats":
        return cls(
            plan=data.get("plan", "free"),
            weekly_usage=data.get("weekly_usage", 0),
            monthly_usage=data.get("monthly_usage", 0),
            lifetime_total=data.get("lifetime_total", 0),
            limit=data.get("limit", 0),
            limit_period=data.get("limit_period", "week"),
            remaining=data.get("remaining", 0),
        )
