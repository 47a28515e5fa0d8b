"""Shared cache infrastructure for multi-instance deployments.

Provides pluggable cache backends:
- Redis backend for distributed state
- In-memory backend for single instances and tests
- Named cache views that domain-separate keys by logical name
"""

from oidc_rp.infra.cache.store import (
    CacheBackend,
    CacheError,
    CacheFactory,
    MemoryCacheBackend,
    NamedCache,
    RedisCacheBackend,
)

__all__ = [
    "CacheBackend",
    "CacheError",
    "CacheFactory",
    "MemoryCacheBackend",
    "NamedCache",
    "RedisCacheBackend",
]
