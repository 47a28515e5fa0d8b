"""Token verification policy.

Decides between local JWT signature verification and remote introspection,
optionally exchanging the token first, and reduces every answer to an
expiry plus the raw claims, or a typed failure.

Example:
    validator = TokenValidator(provider_config, oidc_client)
    validated = await validator.validate(token, TokenKind.BEARER)
    validated.expiry  # unix time
    validated.claims.get_string("sub")
"""

import logging
from dataclasses import dataclass
from enum import Enum

from oidc_rp.config import ProviderConfig
from oidc_rp.infra.observability.metrics import record_token_validation
from oidc_rp.security import session as keys
from oidc_rp.security.claims import Claims
from oidc_rp.security.errors import (
    AuthenticationError,
    IntrospectionFailedError,
    InvalidTokenError,
    TokenInactiveError,
)
from oidc_rp.security.oidc import (
    TOKEN_TYPE_ACCESS_TOKEN,
    TOKEN_TYPE_REFRESH_TOKEN,
    OIDCClient,
    hash_token,
)
from oidc_rp.security.session import SessionKV

logger = logging.getLogger(__name__)


class TokenKind(str, Enum):
    """Where a token came from."""

    ACCESS = "access"  # browser session access token
    BEARER = "bearer"
    # Proof-of-possession binding is not verified yet; handled exactly like BEARER
    POP = "pop"


@dataclass(frozen=True)
class ValidatedToken:
    """Successful validation result."""

    expiry: float
    claims: Claims
    method: str  # "jwt" or "introspection"


class TokenValidator:
    """Verify access and bearer tokens against the identity provider."""

    def __init__(self, config: ProviderConfig, client: OIDCClient) -> None:
        self.config = config
        self.client = client

    async def validate(
        self,
        token: str,
        kind: TokenKind = TokenKind.ACCESS,
        session: SessionKV | None = None,
    ) -> ValidatedToken:
        """Validate a token.

        Args:
            token: Token string as stored or presented
            kind: Token origin
            session: Browser session, consulted for the refresh token when
                token exchange runs in "refresh-token" mode

        Returns:
            Expiry and claims of the token

        Raises:
            IntrospectionFailedError: Introspection or token exchange reported an error
            TokenInactiveError: Introspection reported the token inactive
            SignatureInvalidError: Local JWT verification failed
            InvalidTokenError: The token carries no expiry
            ProviderError: The identity provider could not be reached
        """
        token_hash = hash_token(token)[:16]
        if kind is TokenKind.POP:
            logger.debug(
                "PoP token validated as bearer, possession not verified",
                extra={"token_hash": token_hash},
            )

        method = "introspection" if self.config.introspection_enabled else "jwt"
        try:
            if self.config.introspection_enabled:
                claims = await self._introspect(token, session)
            else:
                claims = Claims(await self.client.verify_jwt(token))

            expiry = claims.get_number("exp")
            if expiry is None:
                raise InvalidTokenError("Validated token carries no exp claim")
        except AuthenticationError as e:
            record_token_validation(method, e.kind)
            logger.warning(
                "Token validation failed",
                extra={
                    "token_hash": token_hash,
                    "auth_path": kind.value,
                    "error_kind": e.kind,
                    "error": str(e),
                },
            )
            raise

        record_token_validation(method, "valid")
        logger.debug(
            "Token validated",
            extra={"token_hash": token_hash, "auth_path": kind.value, "method": method},
        )
        return ValidatedToken(expiry=expiry, claims=claims, method=method)

    async def _introspect(self, token: str, session: SessionKV | None) -> Claims:
        subject = token
        if self.config.token_exchange_mode:
            subject = await self._exchange(token, session)

        body = await self.client.introspect_token(subject)
        if "error" in body:
            reason = body.get("error_description") or body.get("error")
            raise IntrospectionFailedError(f"Token introspection failed: {reason}", reason=reason)
        if body.get("active") is not True:
            raise TokenInactiveError("Token is not active")
        return Claims(body)

    async def _exchange(self, token: str, session: SessionKV | None) -> str:
        """Exchange the stored token and return the token to introspect."""
        subject, subject_type = token, TOKEN_TYPE_ACCESS_TOKEN
        if self.config.token_exchange_mode == "refresh-token" and session is not None:
            refresh_token = session.get(keys.REFRESH_TOKEN)
            if refresh_token:
                subject, subject_type = refresh_token, TOKEN_TYPE_REFRESH_TOKEN

        body = await self.client.exchange_token(subject, subject_type)
        if "error" in body:
            reason = body.get("error_description") or body.get("error")
            raise IntrospectionFailedError(f"Token exchange failed: {reason}", reason=reason)
        exchanged = body.get("access_token")
        if not exchanged:
            raise IntrospectionFailedError(
                "Token exchange returned no access token", reason="missing_access_token"
            )
        return exchanged
