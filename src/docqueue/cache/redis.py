"""Redis cache backend implementation."""

import logging
from typing import Any

import redis.asyncio as redis

from docqueue.cache.base import CacheBackend, CacheUnavailable, WindowHit

logger = logging.getLogger(__name__)


class RedisCache(CacheBackend):
    """
    Redis cache backend shared by every API instance.

    Rate-limit windows are plain integer keys so that INCR works on them.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        prefix: str = "docqueue:",
        max_connections: int = 10,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
    ) -> None:
        """
        Initialize Redis cache.

        Args:
            url: Redis connection URL
            prefix: Key prefix for namespacing
            max_connections: Maximum connections in pool
            socket_timeout: Socket timeout in seconds
            socket_connect_timeout: Connection timeout in seconds
        """
        self._url = url
        self._prefix = prefix
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._client: Any = None
        self._connected = False

    @property
    def name(self) -> str:
        return "redis"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _window_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def connect(self) -> bool:
        """
        Open the connection pool and ping the server.

        A failed ping leaves the backend disconnected; the next window hit
        tries again.

        Returns:
            True if Redis answered
        """
        if self._connected and self._client:
            return True

        try:
            self._client = redis.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_connect_timeout,
                decode_responses=False,
            )
            await self._client.ping()
            self._connected = True
            logger.info(f"Connected to Redis at {self._url}")
            return True
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self._connected = False
            return False

    async def _ensure_connected(self) -> bool:
        if not self._connected:
            return await self.connect()
        return True

    async def hit_window(self, key: str, window_seconds: int) -> WindowHit:
        """
        Count a hit with SET NX EX + INCR + PTTL in one MULTI/EXEC.

        Raises:
            CacheUnavailable: If Redis is unreachable or the transaction fails
        """
        if not await self._ensure_connected():
            raise CacheUnavailable(f"Redis at {self._url} is not reachable")

        prefixed_key = self._window_key(key)
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.set(prefixed_key, 0, nx=True, ex=window_seconds)
            pipe.incr(prefixed_key)
            pipe.pttl(prefixed_key)
            _, count, ttl_ms = await pipe.execute()
            if ttl_ms is None or ttl_ms < 0:
                # Key lost its expiry; give it a fresh window rather than block forever
                await self._client.pexpire(prefixed_key, window_seconds * 1000)
                ttl_ms = window_seconds * 1000
        except Exception as e:
            self._connected = False
            raise CacheUnavailable(f"Redis window update failed for {key}: {e}") from e

        return WindowHit(count=int(count), ttl_ms=int(ttl_ms))

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                self._client = None
                self._connected = False

    async def health_check(self) -> dict[str, Any]:
        if not await self._ensure_connected():
            return {
                "backend": self.name,
                "connected": False,
                "error": "Not connected to Redis",
            }

        try:
            info = await self._client.info("server")
            return {
                "backend": self.name,
                "connected": True,
                "redis_version": info.get("redis_version"),
            }
        except Exception as e:
            return {
                "backend": self.name,
                "connected": self._connected,
                "error": str(e),
            }
