"""
Fixed-window request throttling per caller identity.

Windows live in the shared cache (Redis) so every API instance sees the same
counts. When the shared backend is missing or failing, the limiter keeps
working on a per-process in-memory window and reports itself as degraded.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from docqueue.cache.base import CacheBackend, CacheUnavailable
from docqueue.cache.memory import InMemoryCache
from docqueue.config import Settings
from docqueue.db.base import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    """Whether the request is allowed."""

    remaining: int
    """Remaining requests in the current window."""

    limit: int
    """Maximum requests allowed in the window."""

    reset_at: datetime
    """When the current window closes."""

    retry_after: float | None = None
    """Seconds to wait before retrying (if not allowed)."""

    degraded: bool = False
    """True when the count came from the per-instance fallback window."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat(),
            "retry_after": self.retry_after,
            "degraded": self.degraded,
        }

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_at.isoformat(),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(max(1, int(round(self.retry_after))))
        return headers


@dataclass(frozen=True)
class RateLimitPolicy:
    """A named limit applied to one class of endpoint."""

    name: str
    limit: int
    window_seconds: int


def policies_from_settings(settings: Settings) -> dict[str, RateLimitPolicy]:
    return {
        "upload": RateLimitPolicy("upload", settings.upload_rate_limit, settings.upload_rate_window_seconds),
        "process": RateLimitPolicy("process", settings.process_rate_limit, settings.process_rate_window_seconds),
        "usage": RateLimitPolicy("usage", settings.usage_rate_limit, settings.usage_rate_window_seconds),
    }


class RateLimiter:
    """
    Fixed-window limiter: a window opens on the first request and closes
    ``window_seconds`` later; requests beyond ``limit`` inside it are rejected.
    """

    def __init__(
        self,
        backend: CacheBackend | None = None,
        fallback: InMemoryCache | None = None,
        key_prefix: str = "ratelimit:",
    ) -> None:
        """
        Initialize the limiter.

        Args:
            backend: Shared cache for windows; None runs on the fallback only
            fallback: Per-process store used when the backend is unavailable
            key_prefix: Prefix for window keys
        """
        self._backend = backend
        self._fallback = fallback or InMemoryCache()
        self._key_prefix = key_prefix
        self._degraded = False

    @property
    def name(self) -> str:
        return "fixed_window"

    @property
    def is_degraded(self) -> bool:
        return self._degraded

    def _enter_degraded(self, reason: str) -> None:
        if not self._degraded:
            logger.warning(f"Rate limiting degraded to per-instance memory windows: {reason}")
        self._degraded = True

    def _leave_degraded(self) -> None:
        if self._degraded:
            logger.info("Shared rate limit backend recovered")
        self._degraded = False

    async def allow(self, identifier: str, limit: int, window_seconds: int) -> RateLimitResult:
        """
        Record one request for ``identifier`` and decide whether it may proceed.

        Args:
            identifier: Caller identity, usually "<policy>:<owner or address>"
            limit: Maximum requests per window
            window_seconds: Window length in seconds
        """
        key = f"{self._key_prefix}{identifier}"
        degraded = False

        if self._backend is None:
            self._enter_degraded("no shared backend configured")
            degraded = True
        else:
            try:
                hit = await self._backend.hit_window(key, window_seconds)
                self._leave_degraded()
            except CacheUnavailable as e:
                self._enter_degraded(str(e))
                degraded = True

        if degraded:
            hit = await self._fallback.hit_window(key, window_seconds)

        reset_at = utcnow() + timedelta(milliseconds=hit.ttl_ms)
        allowed = hit.count <= limit
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - hit.count),
            limit=limit,
            reset_at=reset_at,
            retry_after=None if allowed else hit.ttl_ms / 1000,
            degraded=degraded,
        )

    async def allow_policy(self, policy: RateLimitPolicy, subject: str) -> RateLimitResult:
        return await self.allow(f"{policy.name}:{subject}", policy.limit, policy.window_seconds)
