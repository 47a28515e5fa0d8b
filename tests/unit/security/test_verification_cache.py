"""Tests for the token verification cache."""

import pytest

from oidc_rp.security.oidc import hash_token
from oidc_rp.security.verification_cache import (
    BEARER_NAMESPACE,
    SESSION_NAMESPACE,
    CachedVerification,
    VerificationCache,
)


@pytest.fixture
def session_cache(cache_factory, clock) -> VerificationCache:
    return VerificationCache.for_sessions(cache_factory, clock)


@pytest.fixture
def bearer_cache(cache_factory, clock) -> VerificationCache:
    return VerificationCache.for_bearer(cache_factory, clock)


@pytest.mark.asyncio
async def test_put_then_get(bearer_cache, clock) -> None:
    await bearer_cache.put("token-1", "alice", clock.now + 3600)

    assert await bearer_cache.get("token-1") == CachedVerification("alice", clock.now + 3600)


@pytest.mark.asyncio
async def test_namespaces_are_isolated(session_cache, bearer_cache, clock) -> None:
    await session_cache.put("token-1", "alice", clock.now + 3600)

    assert session_cache.namespace == SESSION_NAMESPACE
    assert bearer_cache.namespace == BEARER_NAMESPACE
    assert await bearer_cache.get("token-1") is None


@pytest.mark.asyncio
async def test_expired_entry_not_returned(cache_factory, bearer_cache, clock) -> None:
    """Stale entries the backend has not evicted yet are ignored."""
    named = cache_factory.create(BEARER_NAMESPACE)
    await named.set(hash_token("token-1"), {"principal_id": "alice", "exp": clock.now - 1})

    assert await bearer_cache.get("token-1") is None


@pytest.mark.asyncio
async def test_entry_expires_with_the_clock(cache_factory, clock) -> None:
    named = cache_factory.create(BEARER_NAMESPACE)
    cache = VerificationCache(named, clock)
    await named.set(hash_token("token-1"), {"principal_id": "alice", "exp": clock.now + 10})

    assert await cache.get("token-1") is not None
    clock.advance(10)
    assert await cache.get("token-1") is None


@pytest.mark.asyncio
async def test_past_expiry_is_not_stored(bearer_cache, cache_backend, clock) -> None:
    await bearer_cache.put("token-1", "alice", clock.now)

    assert cache_backend._entries == {}


@pytest.mark.asyncio
async def test_raw_token_never_used_as_key(bearer_cache, cache_backend, clock) -> None:
    await bearer_cache.put("secret-token", "alice", clock.now + 60)

    assert all("secret-token" not in key for key in cache_backend._entries)
    assert f"{BEARER_NAMESPACE}:{hash_token('secret-token')}" in cache_backend._entries


@pytest.mark.asyncio
async def test_invalidate(session_cache, clock) -> None:
    await session_cache.put("token-1", "alice", clock.now + 60)

    await session_cache.invalidate("token-1")

    assert await session_cache.get("token-1") is None


@pytest.mark.asyncio
async def test_malformed_entry_is_a_miss(cache_factory, session_cache) -> None:
    await cache_factory.create(SESSION_NAMESPACE).set(hash_token("token-1"), "garbage")

    assert await session_cache.get("token-1") is None


@pytest.mark.asyncio
async def test_backend_outage_reads_as_miss(unavailable_cache_factory, clock) -> None:
    cache = VerificationCache.for_bearer(unavailable_cache_factory, clock)

    await cache.put("token-1", "alice", clock.now + 60)
    await cache.invalidate("token-1")

    assert await cache.get("token-1") is None
