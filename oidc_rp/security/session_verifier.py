"""Browser session lifecycle.

Runs once per request carrying a browser session:

1. An IdP session id (``sid``) that is no longer live logs the session out
   locally, without any IdP call. If liveness cannot be read the request is
   denied and the session kept.
2. Without a stored access token there is nothing to verify.
3. The access token is verified (cache first, then the IdP). Any failure
   logs the session out; inactive tokens do so silently, other failures
   revoke the access token at the IdP and are raised after the logout.
4. Access tokens expiring within the refresh window are refreshed. A
   failed refresh revokes the access token, logs the session out and raises.

RP-initiated logout is two-phase: ``begin_logout`` captures what must be
revoked and clears the session, ``complete_logout`` talks to the IdP on a
best-effort basis.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from oidc_rp.config import REFRESH_WINDOW_SECONDS, ProviderConfig
from oidc_rp.infra.cache import CacheError, NamedCache
from oidc_rp.infra.observability.metrics import (
    record_logout,
    record_session_verification,
    record_token_refresh,
)
from oidc_rp.security import session as keys
from oidc_rp.security.errors import (
    AuthenticationError,
    CacheUnavailableError,
    ProviderError,
    RefreshFailedError,
    TokenInactiveError,
)
from oidc_rp.security.logout import LogoutSessionStore
from oidc_rp.security.oidc import OIDCClient, hash_token
from oidc_rp.security.session import SessionKV, UserSession, clear_credentials
from oidc_rp.security.token_validator import TokenKind, TokenValidator
from oidc_rp.security.verification_cache import VerificationCache

logger = logging.getLogger(__name__)

REFRESH_LOCK_NAMESPACE = "oidc.refresh-lock"

# Held until expiry: requests still carrying the pre-rotation refresh token
# must not refresh again with it
REFRESH_LOCK_TTL_SECONDS = 30


class SessionState(str, Enum):
    """Outcome of one browser session verification."""

    NO_SESSION = "no_session"
    VALID = "valid"
    REFRESHED = "refreshed"
    EXPIRING = "expiring"  # inside the refresh window, not refreshed
    INVALID = "invalid"


@dataclass(frozen=True)
class PendingRevocation:
    """What the IdP must be told after a local logout."""

    access_token: str | None
    id_token: str | None
    sid: str | None
    post_logout_redirect_uri: str | None
    within_idp_logout: bool = False


class SessionLifecycleManager:
    """Keep browser sessions consistent with the identity provider.

    Example:
        manager = SessionLifecycleManager(
            config, client, validator, session_cache, logout_store, refresh_locks
        )
        state = await manager.verify_browser_session(session, user_session)
    """

    def __init__(
        self,
        config: ProviderConfig,
        client: OIDCClient,
        validator: TokenValidator,
        cache: VerificationCache,
        logout_store: LogoutSessionStore,
        refresh_locks: NamedCache,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.client = client
        self.validator = validator
        self.cache = cache
        self.logout_store = logout_store
        self.refresh_locks = refresh_locks
        self._clock = clock

    async def verify_browser_session(
        self, session: SessionKV, user_session: UserSession
    ) -> SessionState:
        """Verify the OIDC state of a browser session.

        Returns:
            Resulting session state

        Raises:
            IntrospectionFailedError: Introspection error (session already logged out)
            SignatureInvalidError: Bad token signature (session already logged out)
            RefreshFailedError: Refresh grant failed (session already logged out)
            CacheUnavailableError: IdP session liveness unreadable (session kept)
            AuthenticationError: Any other verification failure (session already logged out)
        """
        state = await self._verify(session, user_session)
        record_session_verification(state.value)
        return state

    async def _verify(self, session: SessionKV, user_session: UserSession) -> SessionState:
        sid = session.get(keys.SESSION_ID)
        if sid and not await self._sid_is_valid(sid):
            logger.info("IdP session no longer valid, logging out", extra={"sid": sid})
            await self._force_logout(session, user_session, "sid_invalid")
            return SessionState.INVALID

        access_token = session.get(keys.ACCESS_TOKEN)
        if not access_token:
            return SessionState.NO_SESSION

        cached = await self.cache.get(access_token)
        if cached is not None:
            expiry = cached.expiry
        else:
            try:
                validated = await self.validator.validate(access_token, TokenKind.ACCESS, session)
            except TokenInactiveError:
                await self._force_logout(session, user_session, "token_inactive")
                return SessionState.INVALID
            except AuthenticationError as e:
                await self._force_logout(session, user_session, "token_invalid", revoke=True)
                logger.error(
                    "Browser session token verification failed",
                    extra={"error_kind": e.kind, "token_hash": hash_token(access_token)[:16]},
                )
                raise
            expiry = validated.expiry
            await self.cache.put(access_token, user_session.current_user_id(), expiry)

        return await self._refresh_if_expiring(session, user_session, expiry)

    async def _refresh_if_expiring(
        self, session: SessionKV, user_session: UserSession, expiry: float
    ) -> SessionState:
        now = self._clock()
        if expiry - now >= REFRESH_WINDOW_SECONDS:
            return SessionState.VALID

        refresh_token = session.get(keys.REFRESH_TOKEN)
        if not refresh_token:
            record_token_refresh("no_refresh_token")
            if expiry <= now:
                await self._force_logout(session, user_session, "expired")
                return SessionState.INVALID
            return SessionState.EXPIRING

        try:
            acquired = await self.refresh_locks.add(
                hash_token(refresh_token), True, ttl_seconds=REFRESH_LOCK_TTL_SECONDS
            )
        except CacheError as e:
            # Refreshing without the lock could race a rotating IdP
            logger.warning("Refresh lock unavailable, skipping refresh", extra={"error": str(e)})
            acquired = False
        if not acquired:
            logger.debug("Refresh already in progress for this session, skipping")
            record_token_refresh("skipped")
            return SessionState.EXPIRING

        try:
            tokens = await self.client.refresh_token(refresh_token)
        except ProviderError as e:
            tokens = {"error": "provider_error", "error_description": str(e)}

        if "error" in tokens or not tokens.get("access_token"):
            record_token_refresh("failed")
            reason = tokens.get("error_description") or tokens.get("error") or "no access token"
            await self._force_logout(session, user_session, "refresh_failed", revoke=True)
            raise RefreshFailedError(f"Token refresh failed: {reason}")

        old_access_token = session.get(keys.ACCESS_TOKEN)
        session.set(keys.ACCESS_TOKEN, tokens["access_token"])
        # Providers that do not rotate omit these; the stored ones stay valid
        if tokens.get("refresh_token"):
            session.set(keys.REFRESH_TOKEN, tokens["refresh_token"])
        if tokens.get("id_token"):
            session.set(keys.ID_TOKEN, tokens["id_token"])
        if old_access_token:
            await self.cache.invalidate(old_access_token)

        record_token_refresh("success")
        logger.info(
            "Session tokens refreshed",
            extra={"principal_id": user_session.current_user_id()},
        )
        return SessionState.REFRESHED

    async def _sid_is_valid(self, sid: str) -> bool:
        try:
            return await self.logout_store.is_valid(sid)
        except CacheError as e:
            logger.error(
                "IdP session liveness unavailable", extra={"sid": sid, "error": str(e)}
            )
            raise CacheUnavailableError("IdP session liveness unavailable") from e

    async def _force_logout(
        self,
        session: SessionKV,
        user_session: UserSession,
        trigger: str,
        revoke: bool = False,
    ) -> None:
        """Log out locally after a verification failure.

        With ``revoke`` the stored access token is revoked at the IdP on a
        best-effort basis. No sign-out redirect is produced either way.
        """
        if revoke:
            pending = self.begin_logout(session)
            await user_session.logout()
            await self.complete_logout(pending, sign_out=False)
        else:
            clear_credentials(session)
            session.remove(keys.WITHIN_LOGOUT)
            await user_session.logout()
        record_logout(trigger)

    # ========================================
    # RP-initiated logout
    # ========================================

    def begin_logout(self, session: SessionKV) -> PendingRevocation:
        """Capture the IdP cleanup work and clear the OIDC session keys."""
        pending = PendingRevocation(
            access_token=session.get(keys.ACCESS_TOKEN),
            id_token=session.get(keys.ID_TOKEN),
            sid=session.get(keys.SESSION_ID),
            post_logout_redirect_uri=self.config.post_logout_redirect_uri,
            within_idp_logout=bool(session.get(keys.WITHIN_LOGOUT)),
        )
        clear_credentials(session)
        session.remove(keys.WITHIN_LOGOUT)
        return pending

    async def complete_logout(
        self, pending: PendingRevocation, sign_out: bool = True
    ) -> str | None:
        """Tell the IdP about a local logout. Never raises.

        Args:
            pending: What ``begin_logout`` captured
            sign_out: Build the IdP end-session URL after revoking

        Returns:
            The IdP end-session URL to send the browser to, or None
        """
        if pending.access_token:
            try:
                await self.client.revoke_token(pending.access_token)
            except AuthenticationError as e:
                logger.warning(
                    "Token revocation failed during logout",
                    extra={"error_kind": e.kind, "error": str(e)},
                )
            await self.cache.invalidate(pending.access_token)

        if pending.sid:
            try:
                await self.logout_store.invalidate(pending.sid)
            except CacheError as e:
                logger.warning(
                    "Failed to invalidate IdP session", extra={"sid": pending.sid, "error": str(e)}
                )

        if not sign_out or (pending.access_token is None and pending.id_token is None):
            return None

        # The IdP started this logout; sending the browser back would loop
        if pending.within_idp_logout:
            return None
        record_logout("user")

        try:
            return await self.client.end_session_url(
                pending.id_token, pending.post_logout_redirect_uri
            )
        except AuthenticationError as e:
            logger.warning(
                "Could not build IdP sign-out URL",
                extra={"error_kind": e.kind, "error": str(e)},
            )
            return None

    async def logout(self, session: SessionKV, user_session: UserSession) -> str | None:
        """RP-initiated logout.

        Returns:
            The IdP end-session URL, or None
        """
        pending = self.begin_logout(session)
        await user_session.logout()
        return await self.complete_logout(pending)
