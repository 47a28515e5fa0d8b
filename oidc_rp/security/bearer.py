"""Bearer token authentication for API and WebDAV requests.

Each request presenting ``Authorization: Bearer <token>`` (or ``PoP <token>``)
is authenticated on its own. Verified tokens are cached in the bearer
namespace together with the resolved principal id. Transport sessions that
already authenticated with the same token skip re-validation until the
token expires.

Failures deny the single request only; browser session state is never
touched here.
"""

import logging
import time
from collections.abc import Callable

from oidc_rp.config import ProviderConfig
from oidc_rp.domain.directory import Principal, UserDirectory
from oidc_rp.domain.services.identity import IdentityResolver, NeedsProvisioning
from oidc_rp.domain.services.provisioning import AutoProvisioningEngine
from oidc_rp.infra.observability.metrics import record_bearer_authentication
from oidc_rp.security import session as keys
from oidc_rp.security.claims import Claims
from oidc_rp.security.errors import AuthenticationError, ProviderError, TokenExpiredError
from oidc_rp.security.oidc import OIDCClient, hash_token
from oidc_rp.security.session import SessionKV
from oidc_rp.security.token_validator import TokenKind, TokenValidator
from oidc_rp.security.verification_cache import VerificationCache

logger = logging.getLogger(__name__)

AUTH_SCHEMES = {
    "bearer": TokenKind.BEARER,
    "pop": TokenKind.POP,
}


def parse_authorization_header(header: str | None) -> tuple[TokenKind, str] | None:
    """Split an Authorization header into token kind and token.

    Returns:
        (kind, token), or None for a missing header or another scheme
    """
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    kind = AUTH_SCHEMES.get(scheme.lower())
    token = token.strip()
    if kind is None or not token:
        return None
    return kind, token


class BearerAuthModule:
    """Authenticate bearer and PoP tokens.

    Example:
        module = BearerAuthModule(
            config, client, validator, bearer_cache, resolver, engine, directory
        )
        principal = await module.authenticate_bearer(request.headers.get("Authorization"))
        if principal is None:
            ...  # not ours, try the next authentication mechanism
    """

    def __init__(
        self,
        config: ProviderConfig,
        client: OIDCClient,
        validator: TokenValidator,
        cache: VerificationCache,
        resolver: IdentityResolver,
        engine: AutoProvisioningEngine,
        directory: UserDirectory,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.client = client
        self.validator = validator
        self.cache = cache
        self.resolver = resolver
        self.engine = engine
        self.directory = directory
        self._clock = clock

    async def authenticate_bearer(
        self,
        authorization: str | None,
        transport_session: SessionKV | None = None,
        session: SessionKV | None = None,
    ) -> Principal | None:
        """Authenticate one request.

        Args:
            authorization: Raw Authorization header value
            transport_session: Per-connection session of the transport (WebDAV),
                used for the already-authenticated fast path
            session: Browser session, consulted for token exchange only

        Returns:
            The authenticated principal, or None when no bearer credential was
            supplied (other mechanisms may apply)

        Raises:
            TokenExpiredError: Token used past its expiry
            AuthenticationError: Any other invalid credential
        """
        parsed = parse_authorization_header(authorization)
        if parsed is None:
            record_bearer_authentication("declined")
            return None
        kind, token = parsed
        token_hash = hash_token(token)

        try:
            principal = await self._fast_path(token_hash, transport_session)
            if principal is not None:
                record_bearer_authentication("fast_path")
                return principal

            authenticated = await self._authenticate(token, kind, session)
        except AuthenticationError as e:
            record_bearer_authentication(e.kind)
            logger.warning(
                "Bearer authentication failed",
                extra={
                    "error_kind": e.kind,
                    "token_hash": token_hash[:16],
                    "auth_path": kind.value,
                },
            )
            raise

        if authenticated is None:
            record_bearer_authentication("declined")
            return None
        principal, expiry = authenticated

        if transport_session is not None:
            transport_session.set(
                keys.DAV_AUTHENTICATED,
                {"principal_id": principal.id, "token_hash": token_hash, "exp": expiry},
            )

        record_bearer_authentication("success")
        return principal

    async def _fast_path(
        self, token_hash: str, transport_session: SessionKV | None
    ) -> Principal | None:
        """Reuse a transport session already authenticated with this token."""
        if transport_session is None:
            return None
        marker = transport_session.get(keys.DAV_AUTHENTICATED)
        if not isinstance(marker, dict) or marker.get("token_hash") != token_hash:
            return None

        if marker.get("exp", 0) <= self._clock():
            transport_session.remove(keys.DAV_AUTHENTICATED)
            raise TokenExpiredError("Token expired")

        principal = await self.directory.find_by_id(marker.get("principal_id", ""))
        if principal is None:
            transport_session.remove(keys.DAV_AUTHENTICATED)
        return principal

    async def _authenticate(
        self, token: str, kind: TokenKind, session: SessionKV | None
    ) -> tuple[Principal, float] | None:
        cached = await self.cache.get(token)
        if cached is not None and cached.principal_id:
            principal = await self.directory.find_by_id(cached.principal_id)
            if principal is not None:
                self._check_expiry(cached.expiry)
                return principal, cached.expiry
            await self.cache.invalidate(token)

        validated = await self.validator.validate(token, kind, session)
        self._check_expiry(validated.expiry)

        principal = await self._resolve(token, validated.claims)
        if principal is None:
            return None
        await self.cache.put(token, principal.id, validated.expiry)
        logger.info(
            "Bearer token authenticated",
            extra={"principal_id": principal.id, "auth_path": kind.value},
        )
        return principal, validated.expiry

    def _check_expiry(self, expiry: float) -> None:
        if expiry <= self._clock():
            raise TokenExpiredError("Token expired")

    async def _resolve(self, token: str, claims: Claims) -> Principal | None:
        if claims.get_string(self.config.identity_claim) is None:
            claims = await self._with_user_info(token, claims)

        result = await self.resolver.resolve(claims)
        if isinstance(result, NeedsProvisioning):
            return await self.engine.create_principal(claims)
        return result

    async def _with_user_info(self, token: str, claims: Claims) -> Claims:
        """Fill in claims from the user info endpoint, when the IdP has one."""
        try:
            if not await self.client.get_endpoint("userinfo_endpoint", required=False):
                return claims
            return claims.merged(await self.client.request_user_info(token))
        except ProviderError as e:
            logger.warning("User info lookup failed", extra={"error": str(e)})
            return claims
