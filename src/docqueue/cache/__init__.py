"""
Cache module for distributed state.

Provides pluggable backends (in-memory and Redis) that hold rate-limit
windows shared across API instances.
"""

from docqueue.cache.base import CacheBackend, CacheEntry, CacheUnavailable, WindowHit
from docqueue.cache.factory import create_cache, get_cache
from docqueue.cache.memory import InMemoryCache
from docqueue.cache.redis import RedisCache

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "CacheUnavailable",
    "InMemoryCache",
    "RedisCache",
    "WindowHit",
    "create_cache",
    "get_cache",
]
