"""Shared cache backends for multi-instance deployments.

The verification caches, the IdP session liveness store and the refresh
lock all live in a shared key/value cache so that every instance of the
relying party sees the same state. Only single-key operations are used;
no transactions and no locking beyond what the backend guarantees.

Example:
    backend = RedisCacheBackend(redis_url=settings.redis_url, key_prefix="oidc-rp:")
    await backend.init()

    factory = CacheFactory(backend)
    sessions = factory.create("oidc.sessions")
    await sessions.set("sid-123", True, ttl_seconds=3600)
    await sessions.get("sid-123")  # True
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

from prometheus_client import Counter, Histogram
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from oidc_rp.infra.observability.metrics import _registry

logger = logging.getLogger(__name__)

cache_operations_total = Counter(
    "oidc_rp_cache_operations_total",
    "Total number of shared cache operations",
    ["operation", "status"],
    registry=_registry,
)

cache_operation_duration_seconds = Histogram(
    "oidc_rp_cache_operation_duration_seconds",
    "Duration of shared cache operations in seconds",
    ["operation"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
    registry=_registry,
)


class CacheError(Exception):
    """Base exception for cache backend errors."""


class CacheBackend(ABC):
    """Abstract base class for shared cache backends.

    Values are JSON-serializable. ``ttl_seconds=None`` stores without expiry
    (the backend may still evict on its own).
    """

    async def init(self) -> None:
        """Initialize backend connections. No-op by default."""

    async def close(self) -> None:
        """Release backend connections. No-op by default."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the stored value, or None if missing or expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    async def add(self, key: str, value: Any, ttl_seconds: float) -> bool:
        """Store a value only if the key is absent.

        Returns:
            True if the value was stored, False if the key already existed
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key.

        Returns:
            True if the key existed
        """


class MemoryCacheBackend(CacheBackend):
    """Process-local cache backend.

    Suitable for single-instance deployments and tests. Logout propagation
    across instances requires a shared backend such as Redis.

    Expired entries are dropped when read, and swept on write at most once
    per ``sweep_interval_seconds``.
    """

    def __init__(self, key_prefix: str = "", sweep_interval_seconds: float = 60.0) -> None:
        self.key_prefix = key_prefix
        self.sweep_interval_seconds = sweep_interval_seconds
        self._entries: dict[str, tuple[str, float | None]] = {}
        self._last_sweep = time.monotonic()

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _live_entry(self, full_key: str) -> tuple[str, float | None] | None:
        entry = self._entries.get(full_key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._entries[full_key]
            return None
        return entry

    def _sweep_expired(self) -> None:
        now = time.monotonic()
        if now - self._last_sweep < self.sweep_interval_seconds:
            return
        self._last_sweep = now
        expired = [
            key
            for key, (_, expires_at) in self._entries.items()
            if expires_at is not None and now >= expires_at
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Swept expired cache entries", extra={"count": len(expired)})

    @staticmethod
    def _expiry(ttl_seconds: float | None) -> float | None:
        return time.monotonic() + ttl_seconds if ttl_seconds is not None else None

    async def get(self, key: str) -> Any | None:
        entry = self._live_entry(self._key(key))
        if entry is None:
            cache_operations_total.labels(operation="get", status="miss").inc()
            return None
        cache_operations_total.labels(operation="get", status="hit").inc()
        return json.loads(entry[0])

    async def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        if ttl_seconds is not None and ttl_seconds <= 0:
            await self.delete(key)
            return
        self._sweep_expired()
        self._entries[self._key(key)] = (json.dumps(value), self._expiry(ttl_seconds))
        cache_operations_total.labels(operation="set", status="success").inc()

    async def add(self, key: str, value: Any, ttl_seconds: float) -> bool:
        self._sweep_expired()
        full_key = self._key(key)
        if self._live_entry(full_key) is not None:
            cache_operations_total.labels(operation="add", status="exists").inc()
            return False
        self._entries[full_key] = (json.dumps(value), self._expiry(ttl_seconds))
        cache_operations_total.labels(operation="add", status="success").inc()
        return True

    async def delete(self, key: str) -> bool:
        existed = self._entries.pop(self._key(key), None) is not None
        cache_operations_total.labels(
            operation="delete", status="success" if existed else "not_found"
        ).inc()
        return existed


class RedisCacheBackend(CacheBackend):
    """Redis-backed cache for multi-instance deployments.

    Example:
        backend = RedisCacheBackend(
            redis_url=settings.redis_url,
            pool_size=settings.redis_pool_size,
            timeout_seconds=settings.redis_timeout_seconds,
        )
        await backend.init()
    """

    def __init__(
        self,
        redis_url: str,
        pool_size: int = 10,
        timeout_seconds: float = 5.0,
        key_prefix: str = "oidc-rp:",
    ) -> None:
        """Initialize Redis cache backend.

        Args:
            redis_url: Redis connection URL (e.g., redis://localhost:6379/0 or
                      rediss://secure.redis.example.com:6380/0 for TLS)
            pool_size: Connection pool size
            timeout_seconds: Operation timeout
            key_prefix: Redis key prefix for all entries
        """
        self.redis_url = redis_url
        self.pool_size = pool_size
        self.timeout_seconds = timeout_seconds
        self.key_prefix = key_prefix

        self._pool: ConnectionPool | None = None
        self._client: Redis | None = None

    async def init(self) -> None:
        """Initialize Redis connection pool and client."""
        try:
            self._pool = ConnectionPool.from_url(
                self.redis_url,
                max_connections=self.pool_size,
                socket_timeout=self.timeout_seconds,
                socket_connect_timeout=self.timeout_seconds,
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)

            await self._client.ping()  # type: ignore[misc]
            logger.info(
                "Redis cache backend initialized",
                extra={"redis_url": self.redis_url, "pool_size": self.pool_size},
            )
        except RedisError as e:
            raise CacheError(f"Failed to initialize Redis connection: {e}") from e

    async def close(self) -> None:
        """Close Redis connection and cleanup pool.

        Best-effort cleanup: errors during close are logged but do not propagate.
        """
        client = self._client
        pool = self._pool
        self._client = None
        self._pool = None

        if client is not None:
            try:
                await client.aclose()
            except Exception as exc:
                logger.error("Error while closing Redis client", exc_info=exc)

        if pool is not None:
            try:
                await pool.aclose()
            except Exception as exc:
                logger.error("Error while closing Redis connection pool", exc_info=exc)

        logger.info("Redis cache backend closed")

    def _require_client(self) -> Redis:
        if not self._client:
            raise CacheError("Cache backend not initialized. Call init() first.")
        return self._client

    def _get_redis_key(self, key: str) -> str:
        if not key:
            raise CacheError("Cache key must be non-empty")
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> Any | None:
        client = self._require_client()
        operation = "get"
        try:
            with cache_operation_duration_seconds.labels(operation=operation).time():
                data_str = await client.get(self._get_redis_key(key))
                if data_str is None:
                    cache_operations_total.labels(operation=operation, status="miss").inc()
                    return None
                cache_operations_total.labels(operation=operation, status="hit").inc()
                return json.loads(data_str)
        except (RedisError, json.JSONDecodeError) as e:
            cache_operations_total.labels(operation=operation, status="error").inc()
            raise CacheError(f"Failed to read cache key {key}: {e}") from e

    async def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        client = self._require_client()
        operation = "set"
        try:
            with cache_operation_duration_seconds.labels(operation=operation).time():
                redis_key = self._get_redis_key(key)
                if ttl_seconds is None:
                    await client.set(redis_key, json.dumps(value))
                elif ttl_seconds <= 0:
                    await client.delete(redis_key)
                else:
                    # SETEX needs whole seconds; round up so entries never outlive less
                    await client.setex(redis_key, max(1, int(ttl_seconds + 0.999)), json.dumps(value))
                cache_operations_total.labels(operation=operation, status="success").inc()
        except (RedisError, TypeError) as e:
            cache_operations_total.labels(operation=operation, status="error").inc()
            raise CacheError(f"Failed to write cache key {key}: {e}") from e

    async def add(self, key: str, value: Any, ttl_seconds: float) -> bool:
        client = self._require_client()
        operation = "add"
        try:
            with cache_operation_duration_seconds.labels(operation=operation).time():
                stored = await client.set(
                    self._get_redis_key(key),
                    json.dumps(value),
                    ex=max(1, int(ttl_seconds)),
                    nx=True,
                )
                cache_operations_total.labels(
                    operation=operation, status="success" if stored else "exists"
                ).inc()
                return bool(stored)
        except (RedisError, TypeError) as e:
            cache_operations_total.labels(operation=operation, status="error").inc()
            raise CacheError(f"Failed to add cache key {key}: {e}") from e

    async def delete(self, key: str) -> bool:
        client = self._require_client()
        operation = "delete"
        try:
            with cache_operation_duration_seconds.labels(operation=operation).time():
                deleted = await client.delete(self._get_redis_key(key))
                cache_operations_total.labels(
                    operation=operation, status="success" if deleted else "not_found"
                ).inc()
                return bool(deleted)
        except RedisError as e:
            cache_operations_total.labels(operation=operation, status="error").inc()
            raise CacheError(f"Failed to delete cache key {key}: {e}") from e


class NamedCache:
    """View of a backend restricted to one logical cache name.

    Keys of different named caches never collide, so e.g. the browser and
    bearer verification caches cannot satisfy each other's lookups.
    """

    def __init__(self, backend: CacheBackend, name: str) -> None:
        if not name:
            raise CacheError("Cache name must be non-empty")
        self.backend = backend
        self.name = name

    def _key(self, key: str) -> str:
        if not key:
            raise CacheError("Cache key must be non-empty")
        return f"{self.name}:{key}"

    async def get(self, key: str) -> Any | None:
        return await self.backend.get(self._key(key))

    async def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        await self.backend.set(self._key(key), value, ttl_seconds)

    async def add(self, key: str, value: Any, ttl_seconds: float) -> bool:
        return await self.backend.add(self._key(key), value, ttl_seconds)

    async def delete(self, key: str) -> bool:
        return await self.backend.delete(self._key(key))


class CacheFactory:
    """Create named cache instances over one shared backend."""

    def __init__(self, backend: CacheBackend) -> None:
        self.backend = backend

    def create(self, name: str) -> NamedCache:
        """Return the cache view for a logical name."""
        return NamedCache(self.backend, name)
