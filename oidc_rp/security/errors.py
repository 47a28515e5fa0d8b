"""Authentication error taxonomy.

Every failure the relying party can report is a subclass of
``AuthenticationError`` with a stable ``kind`` string, so hosts can map
failures to responses without matching on messages.

Propagation policy:
- Failures while verifying an existing browser session force a local logout
  before they surface.
- Failures while authenticating a bearer token deny that single request and
  never touch local session state.
- Best-effort IdP calls (revoke, sign-out, avatar download) are logged and
  never raised to the caller.
"""


class AuthenticationError(Exception):
    """Base exception for authentication failures."""

    kind: str = "authentication_failed"


class ConfigurationMissingError(AuthenticationError):
    """Raised when no identity provider is configured.

    Callers treat this as "OIDC not enabled" and do nothing.
    """

    kind = "configuration_missing"


class ProviderError(AuthenticationError):
    """Raised when the identity provider cannot be reached or answers garbage."""

    kind = "provider_error"


class InvalidTokenError(AuthenticationError):
    """Raised when a token is malformed or cannot be used."""

    kind = "invalid_token"


class SignatureInvalidError(InvalidTokenError):
    """Raised when a JWT signature (or its claims) cannot be verified."""

    kind = "signature_invalid"


class IntrospectionFailedError(InvalidTokenError):
    """Raised when the introspection endpoint reports an error."""

    kind = "introspection_failed"

    def __init__(self, message: str, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class TokenInactiveError(InvalidTokenError):
    """Raised when introspection reports the token as inactive."""

    kind = "token_inactive"


class TokenExpiredError(InvalidTokenError):
    """Raised when a token is used past its expiry."""

    kind = "token_expired"


class RefreshFailedError(AuthenticationError):
    """Raised when the refresh-token grant fails."""

    kind = "refresh_failed"


class CacheUnavailableError(AuthenticationError):
    """Raised when IdP session liveness cannot be read from the shared cache.

    The request is denied; the session itself is left untouched.
    """

    kind = "cache_unavailable"


class PasswordLoginDeniedError(AuthenticationError):
    """Raised when a password login is restricted to guest accounts."""

    kind = "password_login_denied"


class IdentityError(AuthenticationError):
    """Base exception for failures mapping claims to a local principal."""

    kind = "identity_error"


class AttributeMissingError(IdentityError):
    """Raised when the configured identity claim is absent."""

    kind = "attribute_missing"


class NotUniqueError(IdentityError):
    """Raised when an e-mail lookup matches more than one principal."""

    kind = "not_unique"


class UserNotFoundError(IdentityError):
    """Raised when no principal matches and none may be provisioned."""

    kind = "not_found"


class BackendNotAllowedError(IdentityError):
    """Raised when the principal's backend may not log in via OIDC."""

    kind = "backend_not_allowed"


class ProvisioningDeniedError(IdentityError):
    """Raised when the provisioning gate claim does not admit the user."""

    kind = "provisioning_denied"


class ProvisioningDisabledError(IdentityError):
    """Raised when an account would be created but provisioning is off."""

    kind = "provisioning_disabled"


class ProvisioningFailedError(IdentityError):
    """Raised when the user directory refuses to create the account."""

    kind = "provisioning_failed"
