"""Tests for cache backends."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from docqueue.cache.base import CacheEntry, CacheUnavailable
from docqueue.cache.factory import create_cache
from docqueue.cache.memory import InMemoryCache
from docqueue.cache.redis import RedisCache
from docqueue.db.base import utcnow


class TestCacheEntry:
    """Tests for CacheEntry dataclass."""

    def test_expires_at_with_ttl(self) -> None:
        entry = CacheEntry(
            key="window",
            value=0,
            created_at=datetime(2025, 1, 1, 12, 0, 0),
            ttl_seconds=3600,
        )
        assert entry.expires_at == datetime(2025, 1, 1, 13, 0, 0)

    def test_expires_at_without_ttl(self) -> None:
        entry = CacheEntry(key="window", value=0, ttl_seconds=None)
        assert entry.expires_at is None
        assert entry.is_expired is False

    def test_is_expired(self) -> None:
        old = CacheEntry(key="a", value=1, created_at=utcnow() - timedelta(hours=2), ttl_seconds=3600)
        fresh = CacheEntry(key="b", value=1, created_at=utcnow(), ttl_seconds=3600)
        assert old.is_expired is True
        assert fresh.is_expired is False

    def test_ttl_remaining(self) -> None:
        entry = CacheEntry(key="a", value=1, created_at=utcnow() - timedelta(seconds=10), ttl_seconds=60)
        assert 49 <= entry.ttl_remaining <= 50


class TestInMemoryCache:
    """Tests for InMemoryCache."""

    @pytest.mark.asyncio
    async def test_hit_window_counts_and_resets(self) -> None:
        cache = InMemoryCache()
        first = await cache.hit_window("window", 60)
        second = await cache.hit_window("window", 60)

        assert (first.count, second.count) == (1, 2)
        assert 0 < second.ttl_ms <= 60_000

        cache._store["window"].created_at -= timedelta(seconds=61)
        assert (await cache.hit_window("window", 60)).count == 1

    @pytest.mark.asyncio
    async def test_windows_are_independent(self) -> None:
        cache = InMemoryCache()
        await cache.hit_window("upload:user-1", 60)
        await cache.hit_window("upload:user-1", 60)

        assert (await cache.hit_window("upload:user-2", 60)).count == 1

    @pytest.mark.asyncio
    async def test_eviction_at_max_size(self) -> None:
        cache = InMemoryCache(max_size=2)
        await cache.hit_window("a", 60)
        cache._store["a"].created_at -= timedelta(seconds=5)
        await cache.hit_window("b", 60)
        await cache.hit_window("c", 60)

        assert set(cache._store) == {"b", "c"}

    @pytest.mark.asyncio
    async def test_eviction_prefers_expired_windows(self) -> None:
        cache = InMemoryCache(max_size=2)
        await cache.hit_window("a", 60)
        await cache.hit_window("b", 1)
        cache._store["b"].created_at -= timedelta(seconds=2)
        await cache.hit_window("c", 60)

        assert set(cache._store) == {"a", "c"}

    @pytest.mark.asyncio
    async def test_health_check(self) -> None:
        cache = InMemoryCache(max_size=5)
        await cache.hit_window("a", 60)
        health = await cache.health_check()
        assert health == {"backend": "memory", "connected": True, "total_entries": 1, "max_size": 5}

    @pytest.mark.asyncio
    async def test_close_drops_windows(self) -> None:
        cache = InMemoryCache()
        await cache.hit_window("a", 60)
        await cache.close()

        assert cache.is_connected is False
        assert cache._store == {}


class TestRedisCache:
    """Tests for RedisCache with a mocked client."""

    def _connected_cache(self, pipe_result=None, pipe_error=None) -> tuple[RedisCache, MagicMock]:
        cache = RedisCache(url="redis://localhost:6379/0", prefix="test:")
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=pipe_result, side_effect=pipe_error)
        client = MagicMock()
        client.pipeline.return_value = pipe
        client.pexpire = AsyncMock()
        cache._client = client
        cache._connected = True
        return cache, pipe

    @pytest.mark.asyncio
    async def test_hit_window_runs_one_transaction(self) -> None:
        cache, pipe = self._connected_cache(pipe_result=[True, 1, 59_000])

        hit = await cache.hit_window("ratelimit:upload:user-1", 60)

        assert (hit.count, hit.ttl_ms) == (1, 59_000)
        cache._client.pipeline.assert_called_once_with(transaction=True)
        pipe.set.assert_called_once_with("test:ratelimit:upload:user-1", 0, nx=True, ex=60)
        pipe.incr.assert_called_once_with("test:ratelimit:upload:user-1")
        pipe.pttl.assert_called_once_with("test:ratelimit:upload:user-1")

    @pytest.mark.asyncio
    async def test_hit_window_repairs_missing_expiry(self) -> None:
        cache, _ = self._connected_cache(pipe_result=[None, 4, -1])

        hit = await cache.hit_window("window", 30)

        assert hit.ttl_ms == 30_000
        cache._client.pexpire.assert_awaited_once_with("test:window", 30_000)

    @pytest.mark.asyncio
    async def test_hit_window_failure_raises_unavailable(self) -> None:
        cache, _ = self._connected_cache(pipe_error=ConnectionError("connection reset"))

        with pytest.raises(CacheUnavailable):
            await cache.hit_window("window", 30)
        assert cache.is_connected is False

    @pytest.mark.asyncio
    async def test_unreachable_redis_raises_unavailable(self) -> None:
        cache = RedisCache(url="redis://localhost:6379/0")
        cache.connect = AsyncMock(return_value=False)

        with pytest.raises(CacheUnavailable):
            await cache.hit_window("window", 30)

class TestCacheFactory:
    """Tests for create_cache."""

    def test_memory_backend(self) -> None:
        assert isinstance(create_cache("memory"), InMemoryCache)

    def test_redis_without_url_returns_none(self) -> None:
        assert create_cache("redis", url=None) is None

    def test_redis_with_url(self) -> None:
        cache = create_cache("redis", url="redis://cache:6379/1", prefix="dq:")
        assert isinstance(cache, RedisCache)
        assert cache.is_connected is False

    def test_unknown_backend(self) -> None:
        with pytest.raises(ValueError):
            create_cache("memcached")
