"""Short-lived memoization of successful token verifications.

Entries map a token fingerprint to the resolved principal and the token
expiry. Browser-session and bearer verifications live in separate named
caches so an entry written by one path can never satisfy the other.
The raw token is never stored; keys are SHA-256 fingerprints.

The cache is an optimization: backend failures are logged and read as
misses, and writes are best-effort.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from oidc_rp.infra.cache import CacheError, CacheFactory, NamedCache
from oidc_rp.infra.observability.metrics import record_cache_lookup
from oidc_rp.security.oidc import hash_token

logger = logging.getLogger(__name__)

SESSION_NAMESPACE = "oidc.session-verification"
BEARER_NAMESPACE = "oidc.bearer-verification"


@dataclass(frozen=True)
class CachedVerification:
    """Cached verification result."""

    principal_id: str | None
    expiry: float  # Unix timestamp


class VerificationCache:
    """Verification cache for one namespace.

    Example:
        cache = VerificationCache.for_bearer(factory)
        await cache.put(token, "alice", expiry=time.time() + 3600)
        hit = await cache.get(token)
    """

    def __init__(self, cache: NamedCache, clock: Callable[[], float] = time.time) -> None:
        self._cache = cache
        self._clock = clock

    @classmethod
    def for_sessions(
        cls, factory: CacheFactory, clock: Callable[[], float] = time.time
    ) -> "VerificationCache":
        return cls(factory.create(SESSION_NAMESPACE), clock)

    @classmethod
    def for_bearer(
        cls, factory: CacheFactory, clock: Callable[[], float] = time.time
    ) -> "VerificationCache":
        return cls(factory.create(BEARER_NAMESPACE), clock)

    @property
    def namespace(self) -> str:
        return self._cache.name

    async def get(self, token: str) -> CachedVerification | None:
        """Return the cached verification for a token.

        Entries at or past their expiry are never returned, even if the
        backend has not evicted them yet.
        """
        try:
            entry = await self._cache.get(hash_token(token))
        except CacheError as e:
            logger.warning(
                "Verification cache unavailable, verifying without it",
                extra={"namespace": self.namespace, "error": str(e)},
            )
            entry = None
        cached = None
        if isinstance(entry, dict) and isinstance(entry.get("exp"), (int, float)):
            if entry["exp"] > self._clock():
                cached = CachedVerification(
                    principal_id=entry.get("principal_id"), expiry=float(entry["exp"])
                )

        record_cache_lookup(self.namespace, cached is not None)
        return cached

    async def put(self, token: str, principal_id: str | None, expiry: float) -> None:
        """Cache a verification until the token expires."""
        ttl = expiry - self._clock()
        if ttl <= 0:
            return
        try:
            await self._cache.set(
                hash_token(token),
                {"principal_id": principal_id, "exp": expiry},
                ttl_seconds=ttl,
            )
        except CacheError as e:
            logger.warning(
                "Failed to cache verification",
                extra={"namespace": self.namespace, "error": str(e)},
            )
            return
        logger.debug(
            "Verification cached",
            extra={
                "namespace": self.namespace,
                "token_hash": hash_token(token)[:16],
                "principal_id": principal_id,
            },
        )

    async def invalidate(self, token: str) -> None:
        """Drop the cached verification for a token."""
        try:
            await self._cache.delete(hash_token(token))
        except CacheError as e:
            logger.warning(
                "Failed to drop cached verification",
                extra={"namespace": self.namespace, "error": str(e)},
            )
