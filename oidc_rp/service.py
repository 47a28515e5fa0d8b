"""Wiring of the relying-party components for one identity provider.

``AuthService`` is the only place that reads ``Settings``. It builds the
immutable ``ProviderConfig`` once and hands it to every component.

Example:
    service = AuthService.from_settings(settings, directory)
    if service is None:
        ...  # OpenID Connect not configured
    await service.init()
    state = await service.verify_browser_session(session, user_session)
    principal = await service.authenticate_bearer(request.headers.get("Authorization"))
    await service.aclose()
"""

import logging
import time
from collections.abc import Callable

import httpx

from oidc_rp.config import ProviderConfig, Settings
from oidc_rp.domain.directory import Principal, UserDirectory
from oidc_rp.domain.services.identity import IdentityResolver
from oidc_rp.domain.services.provisioning import AutoProvisioningEngine, lookup_or_provision
from oidc_rp.infra.cache import CacheBackend, CacheFactory, MemoryCacheBackend, RedisCacheBackend
from oidc_rp.infra.observability.metrics import record_logout, record_password_login_check
from oidc_rp.security.bearer import BearerAuthModule
from oidc_rp.security.claims import Claims
from oidc_rp.security.errors import ConfigurationMissingError, PasswordLoginDeniedError
from oidc_rp.security.login import LoginFlow
from oidc_rp.security.logout import (
    LogoutSessionStore,
    handle_backchannel_logout,
    handle_frontchannel_logout,
    mark_within_idp_logout,
)
from oidc_rp.security.oidc import OIDCClient
from oidc_rp.security.session import SessionKV, UserSession
from oidc_rp.security.session_verifier import (
    REFRESH_LOCK_NAMESPACE,
    SessionLifecycleManager,
    SessionState,
)
from oidc_rp.security.token_validator import TokenValidator
from oidc_rp.security.verification_cache import VerificationCache

logger = logging.getLogger(__name__)

PASSWORD_LOGIN = "password"


def create_cache_backend(settings: Settings) -> CacheBackend:
    """Create the shared cache backend selected in settings."""
    if settings.cache_backend == "redis":
        return RedisCacheBackend(
            redis_url=settings.redis_url,
            pool_size=settings.redis_pool_size,
            timeout_seconds=settings.redis_timeout_seconds,
            key_prefix=settings.cache_key_prefix,
        )
    return MemoryCacheBackend(key_prefix=settings.cache_key_prefix)


class AuthService:
    """All relying-party operations for one provider."""

    def __init__(
        self,
        config: ProviderConfig,
        directory: UserDirectory,
        cache_backend: CacheBackend,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Build the component graph.

        Args:
            config: Provider settings
            directory: Host user directory
            cache_backend: Shared cache backend (owned by the service)
            http_client: Optional shared HTTP client (owned by the caller)
            clock: Wall-clock source, injectable for tests
        """
        self.config = config
        self.directory = directory
        self.cache_backend = cache_backend
        factory = CacheFactory(cache_backend)

        self.client = OIDCClient(config, http_client=http_client, clock=clock)
        self.validator = TokenValidator(config, self.client)
        self.logout_store = LogoutSessionStore.from_factory(factory)
        self.resolver = IdentityResolver(config, directory)
        self.engine = AutoProvisioningEngine(config, directory, http_client=http_client)

        self.sessions = SessionLifecycleManager(
            config,
            self.client,
            self.validator,
            VerificationCache.for_sessions(factory, clock),
            self.logout_store,
            factory.create(REFRESH_LOCK_NAMESPACE),
            clock=clock,
        )
        self.bearer = BearerAuthModule(
            config,
            self.client,
            self.validator,
            VerificationCache.for_bearer(factory, clock),
            self.resolver,
            self.engine,
            directory,
            clock=clock,
        )
        self.login_flow = LoginFlow(
            config, self.client, self.resolver, self.engine, self.logout_store
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        directory: UserDirectory,
        cache_backend: CacheBackend | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "AuthService | None":
        """Build the service, or return None when OpenID Connect is not configured."""
        try:
            config = settings.provider_config()
        except ConfigurationMissingError:
            logger.info("OpenID Connect not configured, relying party disabled")
            return None
        return cls(
            config,
            directory,
            cache_backend or create_cache_backend(settings),
            http_client=http_client,
        )

    async def init(self) -> None:
        await self.cache_backend.init()

    async def aclose(self) -> None:
        await self.client.aclose()
        await self.cache_backend.close()

    async def verify_browser_session(
        self, session: SessionKV, user_session: UserSession
    ) -> SessionState:
        return await self.sessions.verify_browser_session(session, user_session)

    async def authenticate_bearer(
        self,
        authorization: str | None,
        transport_session: SessionKV | None = None,
        session: SessionKV | None = None,
    ) -> Principal | None:
        return await self.bearer.authenticate_bearer(authorization, transport_session, session)

    async def lookup_or_provision(self, claims: Claims) -> Principal | None:
        return await lookup_or_provision(self.resolver, self.engine, claims)

    async def logout(self, session: SessionKV, user_session: UserSession) -> str | None:
        return await self.sessions.logout(session, user_session)

    def ensure_password_login_just_for_guest(
        self, login_type: str | None, principal: Principal
    ) -> None:
        """Apply the guest-only restriction to a completed host login.

        Called by the host after any login. Only password logins are checked,
        and only when the restriction is enabled: guests and members of the
        excluded groups pass, everyone else has to sign in through the IdP.

        Raises:
            PasswordLoginDeniedError: If the principal may not use a password
        """
        if not self.config.password_login_guest_only or login_type != PASSWORD_LOGIN:
            return

        if self.directory.is_guest(principal):
            record_password_login_check("guest")
            return
        if any(group in principal.groups for group in self.config.password_login_exclude_groups):
            record_password_login_check("excluded_group")
            return

        record_password_login_check("denied")
        logger.warning(
            "Password login refused, account must sign in through the IdP",
            extra={"principal_id": principal.id},
        )
        raise PasswordLoginDeniedError(
            "You are not allowed to login through this authentication mechanism"
        )

    async def handle_frontchannel_logout(
        self,
        iss: str | None,
        sid: str | None,
        session: SessionKV | None = None,
        user_session: UserSession | None = None,
    ) -> bool:
        """Front-channel logout: end the local session, then drop the ``sid``."""
        if (
            session is not None
            and user_session is not None
            and mark_within_idp_logout(session, user_session)
        ):
            await self.sessions.logout(session, user_session)
            record_logout("frontchannel")
        return await handle_frontchannel_logout(self.config, self.logout_store, iss, sid)

    async def handle_backchannel_logout(self, logout_token: str) -> str:
        return await handle_backchannel_logout(self.client, self.logout_store, logout_token)
