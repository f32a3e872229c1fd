"""In-memory cache backend implementation."""

import asyncio
import logging
from typing import Any

from docqueue.cache.base import CacheBackend, CacheEntry, WindowHit
from docqueue.db.base import utcnow

logger = logging.getLogger(__name__)


class InMemoryCache(CacheBackend):
    """
    In-memory window store using a simple dictionary.

    Windows kept here are per process: two API instances each admit a full
    window's worth of requests.
    """

    def __init__(self, max_size: int | None = 10_000) -> None:
        """
        Initialize in-memory cache.

        Args:
            max_size: Maximum number of live windows (None = unlimited)
        """
        self._store: dict[str, CacheEntry] = {}
        self._max_size = max_size
        self._lock = asyncio.Lock()
        self._connected = True

    @property
    def name(self) -> str:
        return "memory"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _live_entry(self, key: str) -> CacheEntry | None:
        """Return the entry for key, dropping it if expired (caller holds lock)."""
        entry = self._store.get(key)
        if entry is not None and entry.is_expired:
            del self._store[key]
            return None
        return entry

    def _put(self, entry: CacheEntry) -> None:
        if self._max_size and entry.key not in self._store and len(self._store) >= self._max_size:
            self._evict()
        self._store[entry.key] = entry

    def _evict(self) -> None:
        """Drop expired entries, then the oldest one if still full."""
        for key in [k for k, v in self._store.items() if v.is_expired]:
            del self._store[key]
        if self._max_size and len(self._store) >= self._max_size:
            oldest_key = min(self._store, key=lambda k: self._store[k].created_at)
            del self._store[oldest_key]

    async def hit_window(self, key: str, window_seconds: int) -> WindowHit:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                entry = CacheEntry(
                    key=key, value=0, created_at=utcnow(), ttl_seconds=window_seconds
                )
                self._put(entry)
            entry.value += 1
            return WindowHit(count=entry.value, ttl_ms=int((entry.ttl_remaining or 0) * 1000))

    async def close(self) -> None:
        self._connected = False
        self._store.clear()

    async def health_check(self) -> dict[str, Any]:
        async with self._lock:
            total_entries = len(self._store)
        return {
            "backend": self.name,
            "connected": self.is_connected,
            "total_entries": total_entries,
            "max_size": self._max_size,
        }
