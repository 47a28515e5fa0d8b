"""Interactive authorization code login.

``begin_login`` sends the browser to the IdP with state, nonce and a PKCE
challenge kept in the session. ``complete_login`` handles the callback:
exchanges the code, verifies the ID token, resolves (or provisions) the
principal, logs it in and stores the tokens and the IdP session id.

Every failure surfaces as ``LoginFlowError`` carrying only a generic
user-facing message; the cause is logged.
"""

import logging
import secrets

from oidc_rp.config import ProviderConfig
from oidc_rp.domain.services.identity import IdentityResolver
from oidc_rp.domain.services.provisioning import AutoProvisioningEngine, lookup_or_provision
from oidc_rp.security import session as keys
from oidc_rp.security.claims import Claims
from oidc_rp.security.errors import (
    AuthenticationError,
    ConfigurationMissingError,
    InvalidTokenError,
    ProviderError,
    UserNotFoundError,
)
from oidc_rp.security.logout import LogoutSessionStore
from oidc_rp.security.oidc import OIDCClient, generate_pkce_params
from oidc_rp.security.session import SessionKV, UserSession

logger = logging.getLogger(__name__)

GENERIC_LOGIN_ERROR = "cannot complete sign-in"


class LoginFlowError(AuthenticationError):
    """Interactive login failed. ``str(error)`` is safe to show to users."""

    kind = "login_failed"

    def __init__(self, cause_kind: str | None = None) -> None:
        super().__init__(GENERIC_LOGIN_ERROR)
        self.cause_kind = cause_kind


def _safe_redirect(url: str | None) -> str | None:
    """Only local absolute paths are accepted as post-login targets."""
    if url and url.startswith("/") and not url.startswith("//") and "\\" not in url:
        return url
    return None


class LoginFlow:
    """Authorization code flow with PKCE for browser logins."""

    def __init__(
        self,
        config: ProviderConfig,
        client: OIDCClient,
        resolver: IdentityResolver,
        engine: AutoProvisioningEngine,
        logout_store: LogoutSessionStore,
    ) -> None:
        self.config = config
        self.client = client
        self.resolver = resolver
        self.engine = engine
        self.logout_store = logout_store

    async def begin_login(self, session: SessionKV, redirect_url: str | None = None) -> str:
        """Start a login.

        Args:
            session: Browser session
            redirect_url: Local path to return to after login

        Returns:
            IdP authorization URL to redirect the browser to

        Raises:
            LoginFlowError: If the authorization URL cannot be built
        """
        if not self.config.redirect_uri:
            logger.error("Login attempted without a configured redirect_uri")
            raise LoginFlowError(ConfigurationMissingError.kind)

        state = secrets.token_urlsafe(32)
        nonce = secrets.token_urlsafe(32)
        pkce = generate_pkce_params()

        session.set(keys.STATE, state)
        session.set(keys.NONCE, nonce)
        session.set(keys.PKCE_VERIFIER, pkce.verifier)
        target = _safe_redirect(redirect_url)
        if target:
            session.set(keys.POST_LOGIN_REDIRECT_URL, target)
        else:
            session.remove(keys.POST_LOGIN_REDIRECT_URL)

        try:
            return await self.client.authorization_url(
                self.config.redirect_uri, state, nonce, pkce.challenge
            )
        except AuthenticationError as e:
            logger.error("Cannot build authorization URL", extra={"error_kind": e.kind})
            raise LoginFlowError(e.kind) from e

    async def complete_login(
        self,
        session: SessionKV,
        user_session: UserSession,
        code: str | None,
        state: str | None,
    ) -> str | None:
        """Finish a login on the redirect callback.

        Returns:
            The post-login redirect path, if one was requested

        Raises:
            LoginFlowError: On any failure
        """
        try:
            return await self._complete(session, user_session, code, state)
        except AuthenticationError as e:
            logger.error(
                "Login failed",
                extra={"error_kind": e.kind, "error": str(e)},
            )
            raise LoginFlowError(e.kind) from e

    async def _complete(
        self,
        session: SessionKV,
        user_session: UserSession,
        code: str | None,
        state: str | None,
    ) -> str | None:
        expected_state = session.get(keys.STATE)
        nonce = session.get(keys.NONCE)
        verifier = session.get(keys.PKCE_VERIFIER)
        for key in (keys.STATE, keys.NONCE, keys.PKCE_VERIFIER):
            session.remove(key)

        if not code or not state or not expected_state:
            raise InvalidTokenError("Missing authorization code or state")
        if not secrets.compare_digest(state, expected_state):
            raise InvalidTokenError("State mismatch")

        tokens = await self.client.exchange_authorization_code(
            code, verifier, self.config.redirect_uri or ""
        )
        if "error" in tokens:
            raise ProviderError(
                f"Authorization code exchange failed: {tokens.get('error_description') or tokens['error']}"
            )
        access_token = tokens.get("access_token")
        id_token = tokens.get("id_token")
        if not access_token or not id_token:
            raise ProviderError("Token response lacks access or ID token")

        claims = Claims(await self.client.verify_id_token(id_token, nonce))
        if await self.client.get_endpoint("userinfo_endpoint", required=False):
            claims = claims.merged(await self.client.request_user_info(access_token))

        principal = await lookup_or_provision(self.resolver, self.engine, claims)
        if principal is None:
            raise UserNotFoundError("No principal for this login")

        await user_session.login(principal)

        session.set(keys.ACCESS_TOKEN, access_token)
        session.set(keys.ID_TOKEN, id_token)
        if tokens.get("refresh_token"):
            session.set(keys.REFRESH_TOKEN, tokens["refresh_token"])
        else:
            session.remove(keys.REFRESH_TOKEN)

        sid = claims.get_string("sid")
        if sid:
            session.set(keys.SESSION_ID, sid)
            await self.logout_store.mark_valid(sid)

        logger.info(
            "Login completed",
            extra={"principal_id": principal.id, "sid": sid, "auth_path": "browser"},
        )

        target = session.get(keys.POST_LOGIN_REDIRECT_URL)
        session.remove(keys.POST_LOGIN_REDIRECT_URL)
        return target
