"""Cache factory for creating cache instances based on configuration."""

import logging
from typing import Any

from docqueue.cache.base import CacheBackend
from docqueue.cache.memory import InMemoryCache
from docqueue.cache.redis import RedisCache
from docqueue.config import settings

logger = logging.getLogger(__name__)

# Global cache instance
_cache_instance: CacheBackend | None = None


def create_cache(backend: str | None = None, **kwargs: Any) -> CacheBackend | None:
    """
    Create the shared cache backend for rate-limit windows.

    Args:
        backend: Backend type ("memory" or "redis"), defaults to config
        **kwargs: Additional arguments passed to the backend

    Returns:
        CacheBackend instance, or None when Redis was requested but no URL
        is configured (callers then run on their in-memory fallback)

    Raises:
        ValueError: If backend type is unknown
    """
    backend_type = backend or settings.rate_limit_backend

    if backend_type == "memory":
        return InMemoryCache(max_size=kwargs.get("max_size", 10_000))

    elif backend_type == "redis":
        url = kwargs.get("url", settings.redis_url)
        if not url:
            logger.warning(
                "Redis URL not configured; rate limits are per instance. "
                "Set REDIS_URL to share them across instances."
            )
            return None

        return RedisCache(
            url=url,
            prefix=kwargs.get("prefix", settings.redis_prefix),
            max_connections=kwargs.get("max_connections", 10),
        )

    else:
        raise ValueError(f"Unknown cache backend: {backend_type}")


def get_cache() -> CacheBackend | None:
    """Get the global cache instance, creating it on first access."""
    global _cache_instance

    if _cache_instance is None:
        _cache_instance = create_cache()
        if _cache_instance is not None:
            logger.info(f"Initialized {_cache_instance.name} cache backend")

    return _cache_instance


async def initialize_cache() -> CacheBackend | None:
    """
    Initialize the global cache and establish connections.

    A Redis backend that fails to connect is kept: the rate limiter degrades
    per request and picks Redis back up once it answers again.
    """
    cache = get_cache()
    if isinstance(cache, RedisCache):
        if not await cache.connect():
            logger.warning("Redis unavailable at startup; rate limiting starts degraded")
    return cache


async def shutdown_cache() -> None:
    """Shutdown the global cache and close connections."""
    global _cache_instance

    if _cache_instance is not None:
        await _cache_instance.close()
        _cache_instance = None
        logger.info("Cache shutdown complete")

