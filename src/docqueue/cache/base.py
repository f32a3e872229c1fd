"""Abstract base class for cache backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from docqueue.db.base import utcnow


class CacheUnavailable(Exception):
    """Raised when a shared backend cannot serve a request."""


@dataclass
class CacheEntry:
    """
    A fixed-window counter with its expiry metadata.

    Attributes:
        key: Cache key
        value: Hits recorded in the window
        created_at: When the entry was created
        ttl_seconds: Time-to-live in seconds (None = no expiry)
    """

    key: str
    value: int
    created_at: datetime = field(default_factory=utcnow)
    ttl_seconds: float | None = None

    @property
    def expires_at(self) -> datetime | None:
        """Get expiration time, or None if no TTL."""
        if self.ttl_seconds is None:
            return None
        return self.created_at + timedelta(seconds=self.ttl_seconds)

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return utcnow() >= self.expires_at

    @property
    def ttl_remaining(self) -> float | None:
        """Get remaining TTL in seconds, or None if no expiry."""
        if self.ttl_seconds is None:
            return None
        age = (utcnow() - self.created_at).total_seconds()
        return max(0.0, self.ttl_seconds - age)


@dataclass
class WindowHit:
    """Counter state of a fixed window right after one hit was recorded."""

    count: int
    ttl_ms: int


class CacheBackend(ABC):
    """
    Abstract base class for cache backends.

    Implement this class to add new storage for rate-limit windows
    (e.g., Redis, Memcached).
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name (e.g., 'memory', 'redis')."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def hit_window(self, key: str, window_seconds: int) -> WindowHit:
        """
        Record one hit in the fixed window stored under ``key``.

        The window opens on the first hit and lasts ``window_seconds``; hits
        after it closes open a new window.

        Returns:
            Hit count inside the live window and the milliseconds it has left

        Raises:
            CacheUnavailable: If the backend cannot record the hit
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    async def health_check(self) -> dict[str, Any]:
        return {
            "backend": self.name,
            "connected": self.is_connected,
        }
