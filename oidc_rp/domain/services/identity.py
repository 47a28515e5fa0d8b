"""Map verified claims to a local principal.

The lookup attribute depends on the provider mode:
- "email": search the directory by e-mail; exactly one match is required
- "userid": look the principal up by its exact identifier
"""

import logging
from dataclasses import dataclass

from oidc_rp.config import ProviderConfig
from oidc_rp.domain.directory import Principal, UserDirectory
from oidc_rp.security.claims import Claims
from oidc_rp.security.errors import (
    AttributeMissingError,
    BackendNotAllowedError,
    NotUniqueError,
    UserNotFoundError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NeedsProvisioning:
    """No principal matched; the caller may create one."""

    identity: str


class IdentityResolver:
    """Resolve claims to a principal of the user directory.

    Example:
        resolver = IdentityResolver(provider_config, directory)
        result = await resolver.resolve(claims)
        if isinstance(result, NeedsProvisioning):
            principal = await engine.create_principal(claims)
    """

    def __init__(self, config: ProviderConfig, directory: UserDirectory) -> None:
        self.config = config
        self.directory = directory

    def identity_of(self, claims: Claims) -> str:
        """Return the identity claim value.

        Raises:
            AttributeMissingError: If the configured identity claim is absent
        """
        identity = claims.get_string(self.config.identity_claim)
        if identity is None:
            raise AttributeMissingError(
                f"Identity claim '{self.config.identity_claim}' missing from claims"
            )
        return identity

    async def resolve(self, claims: Claims) -> Principal | NeedsProvisioning | None:
        """Resolve claims to a principal.

        Returns:
            The matching principal; ``NeedsProvisioning`` when nothing matched
            and provisioning is enabled; None when nothing matched,
            provisioning is disabled and configured to be ignored

        Raises:
            AttributeMissingError: Identity claim absent
            NotUniqueError: E-mail lookup matched several principals
            UserNotFoundError: Nothing matched and provisioning is disabled
            BackendNotAllowedError: Principal's backend may not log in via OIDC
        """
        identity = self.identity_of(claims)

        if self.config.mode == "email":
            matches = await self.directory.find_by_attribute("email", identity)
            if len(matches) > 1:
                logger.warning(
                    "E-mail lookup matched several principals",
                    extra={"error_kind": NotUniqueError.kind, "match_count": len(matches)},
                )
                raise NotUniqueError(f"{len(matches)} principals share the e-mail address")
            principal = matches[0] if matches else None
        else:
            principal = await self.directory.find_by_id(identity)

        if principal is None:
            provisioning = self.config.auto_provision
            if provisioning.enabled:
                return NeedsProvisioning(identity=identity)
            if provisioning.when_disabled == "ignore":
                return None
            raise UserNotFoundError("No principal matches the identity claim")

        allowed = self.config.allowed_backends
        if allowed is not None and principal.backend not in allowed:
            logger.warning(
                "Principal backend not allowed for OpenID Connect login",
                extra={"principal_id": principal.id, "backend": principal.backend},
            )
            raise BackendNotAllowedError(
                f"Backend '{principal.backend}' is not allowed to log in via OpenID Connect"
            )

        return principal
