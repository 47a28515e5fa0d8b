"""Unit tests for shared cache backends."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.asyncio import Redis
from redis.exceptions import RedisError

from oidc_rp.infra.cache.store import (
    CacheBackend,
    CacheError,
    CacheFactory,
    MemoryCacheBackend,
    NamedCache,
    RedisCacheBackend,
)


class TestCacheBackendInterface:
    def test_cache_backend_is_abstract(self) -> None:
        with pytest.raises(TypeError, match="Can't instantiate abstract class"):
            CacheBackend()  # type: ignore


class TestMemoryCacheBackend:
    """Tests for the process-local backend."""

    @pytest.fixture
    def mock_time(self):
        with patch("oidc_rp.infra.cache.store.time") as mock_time:
            mock_time.monotonic.return_value = 1000.0
            yield mock_time

    @pytest.mark.asyncio
    async def test_set_and_get(self) -> None:
        backend = MemoryCacheBackend()

        await backend.set("k", {"a": 1})

        assert await backend.get("k") == {"a": 1}
        assert await backend.get("missing") is None

    @pytest.mark.asyncio
    async def test_entries_expire(self, mock_time) -> None:
        backend = MemoryCacheBackend()
        await backend.set("k", "v", ttl_seconds=10)

        mock_time.monotonic.return_value = 1009.0
        assert await backend.get("k") == "v"

        mock_time.monotonic.return_value = 1010.0
        assert await backend.get("k") is None

    @pytest.mark.asyncio
    async def test_unread_expired_entries_swept_on_write(self, mock_time) -> None:
        backend = MemoryCacheBackend(sweep_interval_seconds=60)
        for n in range(3):
            await backend.set(f"token-{n}", "v", ttl_seconds=10)
        await backend.set("forever", "v")

        mock_time.monotonic.return_value = 1030.0
        await backend.set("late", "v", ttl_seconds=100)
        assert len(backend._entries) == 5

        mock_time.monotonic.return_value = 1060.0
        await backend.add("lock", "v", ttl_seconds=10)

        assert set(backend._entries) == {"forever", "late", "lock"}

    @pytest.mark.asyncio
    async def test_non_positive_ttl_deletes(self) -> None:
        backend = MemoryCacheBackend()
        await backend.set("k", "v")

        await backend.set("k", "v2", ttl_seconds=0)

        assert await backend.get("k") is None

    @pytest.mark.asyncio
    async def test_add_only_when_absent(self, mock_time) -> None:
        backend = MemoryCacheBackend()

        assert await backend.add("lock", True, ttl_seconds=30) is True
        assert await backend.add("lock", True, ttl_seconds=30) is False

        mock_time.monotonic.return_value = 1031.0
        assert await backend.add("lock", True, ttl_seconds=30) is True

    @pytest.mark.asyncio
    async def test_delete(self) -> None:
        backend = MemoryCacheBackend()
        await backend.set("k", "v")

        assert await backend.delete("k") is True
        assert await backend.delete("k") is False

    @pytest.mark.asyncio
    async def test_values_are_copied(self) -> None:
        """Stored values are serialized, later mutation does not leak in."""
        backend = MemoryCacheBackend()
        value = {"principal_id": "alice"}
        await backend.set("k", value)

        value["principal_id"] = "mallory"

        assert await backend.get("k") == {"principal_id": "alice"}


class TestRedisCacheBackend:
    """Tests for RedisCacheBackend implementation."""

    @pytest.fixture
    def mock_redis_client(self) -> AsyncMock:
        client = AsyncMock(spec=Redis)
        client.ping = AsyncMock()
        client.get = AsyncMock()
        client.set = AsyncMock()
        client.setex = AsyncMock()
        client.delete = AsyncMock()
        client.aclose = AsyncMock()
        return client

    @pytest.fixture
    def backend(self, mock_redis_client: AsyncMock) -> RedisCacheBackend:
        backend = RedisCacheBackend(
            redis_url="redis://localhost:6379/0",
            pool_size=5,
            timeout_seconds=3.0,
            key_prefix="test:",
        )
        backend._client = mock_redis_client
        return backend

    @pytest.mark.asyncio
    async def test_init_creates_connection(self) -> None:
        backend = RedisCacheBackend("redis://localhost:6379/0", pool_size=5, timeout_seconds=3.0)
        with (
            patch("oidc_rp.infra.cache.store.ConnectionPool") as mock_pool_class,
            patch("oidc_rp.infra.cache.store.Redis") as mock_redis_class,
        ):
            mock_pool = MagicMock()
            mock_pool_class.from_url.return_value = mock_pool
            mock_client = AsyncMock(spec=Redis)
            mock_client.ping = AsyncMock()
            mock_redis_class.return_value = mock_client

            await backend.init()

            mock_pool_class.from_url.assert_called_once_with(
                "redis://localhost:6379/0",
                max_connections=5,
                socket_timeout=3.0,
                socket_connect_timeout=3.0,
                decode_responses=True,
            )
            mock_redis_class.assert_called_once_with(connection_pool=mock_pool)
            mock_client.ping.assert_called_once()

    @pytest.mark.asyncio
    async def test_init_failure_raises_error(self) -> None:
        backend = RedisCacheBackend("redis://localhost:6379/0")
        with (
            patch("oidc_rp.infra.cache.store.ConnectionPool"),
            patch("oidc_rp.infra.cache.store.Redis") as mock_redis_class,
        ):
            mock_client = AsyncMock(spec=Redis)
            mock_client.ping = AsyncMock(side_effect=RedisError("Connection failed"))
            mock_redis_class.return_value = mock_client

            with pytest.raises(CacheError, match="Failed to initialize Redis connection"):
                await backend.init()

    @pytest.mark.asyncio
    async def test_uninitialized_backend_raises(self) -> None:
        backend = RedisCacheBackend("redis://localhost:6379/0")

        with pytest.raises(CacheError, match="not initialized"):
            await backend.get("k")

    @pytest.mark.asyncio
    async def test_close_cleanup_resources(
        self, backend: RedisCacheBackend, mock_redis_client: AsyncMock
    ) -> None:
        mock_pool = MagicMock()
        mock_pool.aclose = AsyncMock()
        backend._pool = mock_pool

        await backend.close()

        mock_redis_client.aclose.assert_called_once()
        mock_pool.aclose.assert_called_once()
        assert backend._client is None

    @pytest.mark.asyncio
    async def test_get_decodes_json(
        self, backend: RedisCacheBackend, mock_redis_client: AsyncMock
    ) -> None:
        mock_redis_client.get.return_value = json.dumps({"exp": 123})

        assert await backend.get("k") == {"exp": 123}
        mock_redis_client.get.assert_called_once_with("test:k")

    @pytest.mark.asyncio
    async def test_get_miss(self, backend: RedisCacheBackend, mock_redis_client: AsyncMock) -> None:
        mock_redis_client.get.return_value = None

        assert await backend.get("k") is None

    @pytest.mark.asyncio
    async def test_set_with_ttl_rounds_up(
        self, backend: RedisCacheBackend, mock_redis_client: AsyncMock
    ) -> None:
        await backend.set("k", True, ttl_seconds=10.2)

        mock_redis_client.setex.assert_called_once_with("test:k", 11, "true")

    @pytest.mark.asyncio
    async def test_set_without_ttl(
        self, backend: RedisCacheBackend, mock_redis_client: AsyncMock
    ) -> None:
        await backend.set("k", "v")

        mock_redis_client.set.assert_called_once_with("test:k", '"v"')

    @pytest.mark.asyncio
    async def test_set_expired_ttl_deletes(
        self, backend: RedisCacheBackend, mock_redis_client: AsyncMock
    ) -> None:
        await backend.set("k", "v", ttl_seconds=-1)

        mock_redis_client.delete.assert_called_once_with("test:k")
        mock_redis_client.setex.assert_not_called()

    @pytest.mark.asyncio
    async def test_add_uses_set_nx(
        self, backend: RedisCacheBackend, mock_redis_client: AsyncMock
    ) -> None:
        mock_redis_client.set.return_value = None

        assert await backend.add("lock", True, ttl_seconds=30) is False
        mock_redis_client.set.assert_called_once_with("test:lock", "true", ex=30, nx=True)

    @pytest.mark.asyncio
    async def test_redis_error_becomes_cache_error(
        self, backend: RedisCacheBackend, mock_redis_client: AsyncMock
    ) -> None:
        mock_redis_client.delete.side_effect = RedisError("boom")

        with pytest.raises(CacheError, match="Failed to delete"):
            await backend.delete("k")


class TestNamedCache:
    @pytest.mark.asyncio
    async def test_names_do_not_collide(self) -> None:
        factory = CacheFactory(MemoryCacheBackend())
        browser = factory.create("oidc.session-verification")
        bearer = factory.create("oidc.bearer-verification")

        await browser.set("token", {"principal_id": "alice"})

        assert await bearer.get("token") is None
        assert await browser.get("token") == {"principal_id": "alice"}

    def test_empty_name_rejected(self) -> None:
        with pytest.raises(CacheError):
            NamedCache(MemoryCacheBackend(), "")

    @pytest.mark.asyncio
    async def test_empty_key_rejected(self) -> None:
        cache = NamedCache(MemoryCacheBackend(), "oidc.sessions")

        with pytest.raises(CacheError):
            await cache.get("")
