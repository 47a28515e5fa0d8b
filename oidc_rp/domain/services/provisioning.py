"""Just-in-time account provisioning and attribute synchronization.

Responsibilities:
- Create a local principal on first federated login (when enabled)
- Enforce the optional provisioning gate claim
- Keep e-mail, display name, avatar and group memberships in line with
  the claims on later logins (when enabled)

Writes are idempotent: unchanged claims on an unchanged principal produce
no directory writes. Avatar downloads are best-effort.
"""

import logging
import secrets

import httpx

from oidc_rp.config import ProviderConfig
from oidc_rp.domain.directory import Principal, UserDirectory
from oidc_rp.domain.services.identity import IdentityResolver, NeedsProvisioning
from oidc_rp.infra.observability.metrics import record_provisioning_event
from oidc_rp.security.claims import Claims
from oidc_rp.security.errors import (
    ProvisioningDeniedError,
    ProvisioningDisabledError,
    ProvisioningFailedError,
)

logger = logging.getLogger(__name__)

GENERATED_ID_PREFIX = "oidc-user-"

# Attributes applied when a principal is created
PROVISIONED_ATTRIBUTES = ("email", "display-name", "avatar", "groups")

MAX_AVATAR_BYTES = 5 * 1024 * 1024


class AutoProvisioningEngine:
    """Create and update principals from claims.

    Example:
        engine = AutoProvisioningEngine(provider_config, directory, http_client)
        principal = await engine.create_principal(claims)
        await engine.sync_attributes(principal, claims)
    """

    def __init__(
        self,
        config: ProviderConfig,
        directory: UserDirectory,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Provider settings
            directory: Host user directory
            http_client: Client used for avatar downloads (one per call if omitted)
        """
        self.config = config
        self.directory = directory
        self._http_client = http_client
        self._resolver = IdentityResolver(config, directory)

    def _check_gate(self, claims: Claims) -> None:
        provisioning = self.config.auto_provision
        if not provisioning.provisioning_claim:
            return
        values = claims.get_string_array(provisioning.provisioning_claim)
        if values is None or provisioning.provisioning_attribute not in values:
            raise ProvisioningDeniedError(
                f"Claim '{provisioning.provisioning_claim}' does not admit this user"
            )

    async def create_principal(self, claims: Claims) -> Principal | None:
        """Create a principal from claims.

        Returns:
            The new, enabled principal; None when provisioning is disabled and
            configured to be ignored

        Raises:
            ProvisioningDisabledError: Provisioning is disabled
            AttributeMissingError: Identity claim absent
            ProvisioningDeniedError: Gate claim does not admit the user
            ProvisioningFailedError: The directory refused the account
        """
        provisioning = self.config.auto_provision
        if not provisioning.enabled:
            if provisioning.when_disabled == "ignore":
                return None
            raise ProvisioningDisabledError("Auto provisioning is disabled")

        identity = self._resolver.identity_of(claims)
        self._check_gate(claims)

        if self.config.mode == "email":
            principal_id = f"{GENERATED_ID_PREFIX}{secrets.token_hex(16)}"
        else:
            principal_id = identity
        password = secrets.token_urlsafe(32)

        principal = await self.directory.create(principal_id, password)
        if principal is None:
            record_provisioning_event("create", success=False)
            raise ProvisioningFailedError(f"Directory refused to create '{principal_id}'")

        await self.directory.set_enabled(principal, True)
        principal.enabled = True

        if self.config.mode == "email":
            # The identity value is the e-mail; it is never rewritten later
            await self.directory.set_email(principal, identity)
            principal.email = identity

        for group in provisioning.groups:
            await self._add_to_group(principal, group)

        await self.sync_attributes(principal, claims, force=True)

        record_provisioning_event("create", success=True)
        logger.info("Principal provisioned", extra={"principal_id": principal.id})
        return principal

    async def sync_attributes(
        self, principal: Principal, claims: Claims, force: bool = False
    ) -> None:
        """Update principal attributes that differ from the claims.

        Args:
            principal: Principal to update
            claims: Claims of the current login
            force: Apply every mapped attribute even if auto update is disabled
        """
        if not force and not self.config.auto_update.enabled:
            return

        attributes = PROVISIONED_ATTRIBUTES if force else self.config.auto_update.attributes
        mappings = self.config.auto_provision.claim_mappings

        if "email" in attributes and self.config.mode != "email":
            email = claims.get_string(mappings.email)
            if (
                email
                and email != principal.email
                and self.directory.can_change_email(principal)
            ):
                await self.directory.set_email(principal, email)
                principal.email = email

        if "display-name" in attributes:
            display_name = claims.get_string(mappings.display_name)
            if (
                display_name
                and display_name != principal.display_name
                and self.directory.can_change_display_name(principal)
            ):
                await self.directory.set_display_name(principal, display_name)
                principal.display_name = display_name

        if "groups" in attributes:
            for group in claims.get_string_array(mappings.groups) or []:
                if group not in principal.groups:
                    await self._add_to_group(principal, group)

        if "avatar" in attributes:
            picture = claims.get_string(mappings.picture)
            if picture and picture != principal.avatar_url:
                await self._sync_avatar(principal, picture)

        if not force:
            record_provisioning_event("sync", success=True)

    async def _add_to_group(self, principal: Principal, group: str) -> None:
        if await self.directory.add_to_group(principal, group):
            if group not in principal.groups:
                principal.groups.append(group)
        else:
            logger.warning(
                "Skipping unknown group",
                extra={"principal_id": principal.id, "group": group},
            )

    async def _sync_avatar(self, principal: Principal, url: str) -> None:
        """Download and store the avatar. Failures are logged, never raised."""
        client = self._http_client or httpx.AsyncClient()
        try:
            response = await client.get(
                url, timeout=self.config.http_timeout_seconds, follow_redirects=True
            )
            response.raise_for_status()
            content_type = response.headers.get("content-type", "")
            if not content_type.startswith("image/"):
                raise ValueError(f"unexpected content type '{content_type}'")
            if len(response.content) > MAX_AVATAR_BYTES:
                raise ValueError("avatar too large")

            await self.directory.set_avatar(principal, response.content, url)
            principal.avatar_url = url
            record_provisioning_event("avatar", success=True)
        except (httpx.HTTPError, ValueError) as e:
            record_provisioning_event("avatar", success=False)
            logger.warning(
                "Avatar download failed",
                extra={"principal_id": principal.id, "error": str(e)},
            )
        finally:
            if not self._http_client:
                await client.aclose()


async def lookup_or_provision(
    resolver: IdentityResolver, engine: AutoProvisioningEngine, claims: Claims
) -> Principal | None:
    """Resolve claims after a fresh login, provisioning or updating as configured.

    Returns:
        The principal; None when nothing matched and a disabled provisioning
        is configured to be ignored

    Raises:
        IdentityError: Any resolution or provisioning failure
    """
    result = await resolver.resolve(claims)
    if result is None:
        return None
    if isinstance(result, NeedsProvisioning):
        return await engine.create_principal(claims)

    await engine.sync_attributes(result, claims)
    return result
