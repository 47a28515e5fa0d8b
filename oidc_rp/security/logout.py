"""IdP session liveness and logout notifications.

``LogoutSessionStore`` tracks which IdP session ids (``sid``) are still
alive. A login marks its ``sid`` live; front-channel and back-channel logout
notifications from the IdP remove it, and every instance then logs the
matching browser session out on its next request.
"""

import logging
from urllib.parse import urlsplit

from oidc_rp.config import ProviderConfig
from oidc_rp.infra.cache import CacheFactory, NamedCache
from oidc_rp.infra.observability.metrics import record_logout
from oidc_rp.security import session as keys
from oidc_rp.security.errors import InvalidTokenError
from oidc_rp.security.oidc import OIDCClient
from oidc_rp.security.session import SessionKV, UserSession

logger = logging.getLogger(__name__)

SESSIONS_NAMESPACE = "oidc.sessions"

# Liveness entries outlive any reasonable IdP session
SESSION_RECORD_TTL_SECONDS = 7 * 24 * 3600

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store",
    "Pragma": "no-cache",
}


class LogoutSessionStore:
    """IdP session id to liveness flag."""

    def __init__(self, cache: NamedCache, ttl_seconds: float = SESSION_RECORD_TTL_SECONDS) -> None:
        self._cache = cache
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_factory(cls, factory: CacheFactory) -> "LogoutSessionStore":
        return cls(factory.create(SESSIONS_NAMESPACE))

    async def mark_valid(self, sid: str) -> None:
        await self._cache.set(sid, True, ttl_seconds=self.ttl_seconds)

    async def is_valid(self, sid: str) -> bool:
        """Absent and false records are both invalid."""
        return await self._cache.get(sid) is True

    async def invalidate(self, sid: str) -> None:
        await self._cache.delete(sid)


def same_host(url: str, other: str) -> bool:
    """Whether two URLs point at the same host (scheme-insensitive)."""
    first = urlsplit(url if "://" in url else f"//{url}").hostname
    second = urlsplit(other if "://" in other else f"//{other}").hostname
    return bool(first) and first == second


def mark_within_idp_logout(session: SessionKV, user_session: UserSession) -> bool:
    """Flag an active session as being logged out by the IdP.

    The flag keeps the following local logout from sending the browser back
    to the IdP, which started the logout.

    Returns:
        True if there was an active session to log out
    """
    if not user_session.is_logged_in():
        return False
    session.set(keys.WITHIN_LOGOUT, True)
    return True


async def handle_frontchannel_logout(
    config: ProviderConfig,
    store: LogoutSessionStore,
    iss: str | None,
    sid: str | None,
) -> bool:
    """Process a front-channel logout notification from the IdP.

    Other browsers holding the same ``sid`` are logged out on their next
    request.

    Returns:
        True if a ``sid`` was invalidated
    """
    if not iss or not sid:
        return False

    if not same_host(iss, config.provider_url):
        logger.warning(
            "Front-channel logout from foreign issuer ignored",
            extra={"sid": sid, "provider_url": config.provider_url},
        )
        return False

    await store.invalidate(sid)
    logger.info("IdP session invalidated by front-channel logout", extra={"sid": sid})
    return True


async def handle_backchannel_logout(
    client: OIDCClient, store: LogoutSessionStore, logout_token: str
) -> str:
    """Process a back-channel logout token posted by the IdP.

    Returns:
        The invalidated ``sid``

    Raises:
        SignatureInvalidError: If the logout token does not verify
        InvalidTokenError: If it is not a usable logout token
    """
    claims = await client.verify_logout_token(logout_token)
    sid = claims.get("sid")
    if not sid:
        # Subject-wide logout needs a sub index this store does not keep
        raise InvalidTokenError("Logout token carries no sid")

    await store.invalidate(sid)
    record_logout("backchannel")
    logger.info("IdP session invalidated by back-channel logout", extra={"sid": sid})
    return sid
