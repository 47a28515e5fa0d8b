"""Security module for the OpenID Connect relying party.

Provides token verification, session lifecycle and logout handling:
- errors: Typed authentication failures
- claims: Typed access to provider-defined claim sets
- oidc: Protocol client for the identity provider (Authlib + httpx)
- token_validator: JWT-local or introspection verification
- verification_cache: Short-lived, namespaced verification memoization
- session_verifier: Browser session state machine
- bearer: Bearer/PoP token authentication for API and WebDAV
- logout: IdP session liveness store and logout notifications
- login: Authorization code login flow

Only the leaf modules are re-exported here; import the components from
their modules.
"""

from oidc_rp.security.claims import Claims
from oidc_rp.security.errors import (
    AttributeMissingError,
    AuthenticationError,
    BackendNotAllowedError,
    CacheUnavailableError,
    ConfigurationMissingError,
    IdentityError,
    IntrospectionFailedError,
    InvalidTokenError,
    NotUniqueError,
    PasswordLoginDeniedError,
    ProviderError,
    ProvisioningDeniedError,
    ProvisioningDisabledError,
    ProvisioningFailedError,
    RefreshFailedError,
    SignatureInvalidError,
    TokenExpiredError,
    TokenInactiveError,
    UserNotFoundError,
)

__all__ = [
    "Claims",
    # Errors
    "AuthenticationError",
    "ConfigurationMissingError",
    "ProviderError",
    "InvalidTokenError",
    "SignatureInvalidError",
    "IntrospectionFailedError",
    "TokenInactiveError",
    "TokenExpiredError",
    "RefreshFailedError",
    "CacheUnavailableError",
    "PasswordLoginDeniedError",
    "IdentityError",
    "AttributeMissingError",
    "NotUniqueError",
    "UserNotFoundError",
    "BackendNotAllowedError",
    "ProvisioningDeniedError",
    "ProvisioningDisabledError",
    "ProvisioningFailedError",
]
