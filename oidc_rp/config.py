"""Configuration module for the OpenID Connect relying party.

Implements Pydantic v2 Settings for configuration management with support for:
- Environment variables (OIDC_RP_* prefix, nested blocks via "__")
- YAML/TOML configuration files
- Fail-fast validation at startup

The verification components never read settings themselves. The wiring layer
converts the ``openid_connect`` block into an immutable ``ProviderConfig`` once
and passes it to every component explicitly.

Configuration priority (later overrides earlier):
1. Built-in defaults
2. Configuration file (YAML/TOML)
3. Environment variables
"""

import warnings
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from oidc_rp.security.errors import ConfigurationMissingError

# Refresh the session tokens when the access token expires within this window
REFRESH_WINDOW_SECONDS = 5 * 60

DEFAULT_SCOPES = ("openid", "profile", "email")


# ========================================
# Immutable per-request provider view
# ========================================


class ClaimMappings(BaseModel):
    """Claim names used to populate principal attributes."""

    model_config = ConfigDict(frozen=True)

    email: str | None = None
    display_name: str | None = None
    picture: str | None = None
    groups: str | None = None


class AutoProvisionConfig(BaseModel):
    """Just-in-time account creation settings."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    claim_mappings: ClaimMappings = ClaimMappings()
    groups: tuple[str, ...] = ()
    provisioning_claim: str | None = None
    provisioning_attribute: str | None = None
    # "raise": a missing account is an error; "ignore": fall through to other lookups
    when_disabled: Literal["raise", "ignore"] = "raise"


class AutoUpdateConfig(BaseModel):
    """Attribute synchronization on subsequent logins."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    attributes: tuple[str, ...] = ("email", "display-name")


class ProviderConfig(BaseModel):
    """Static, immutable view of the identity provider settings.

    Built once from ``Settings`` and threaded through every component.

    Attributes:
        provider_url: Issuer URL of the identity provider
        client_id: OAuth client ID of this relying party
        client_secret: OAuth client secret of this relying party
        scopes: Scopes requested during login
        mode: "email" looks principals up by e-mail, "userid" by identifier
        identity_claim: Claim carrying the value used for the lookup
        introspection_enabled: Verify tokens remotely instead of checking JWT signatures
        introspection_client_id: Client ID used for introspection calls
        introspection_client_secret: Client secret used for introspection calls
        token_exchange_mode: Exchange a stored token before introspection
        provider_params: Manual endpoint metadata overriding discovery
        auto_provision: Just-in-time provisioning settings
        auto_update: Attribute synchronization settings
        allowed_backends: Principal backends permitted to log in (None = all)
        post_logout_redirect_uri: Where the IdP sends the browser after sign-out
        redirect_uri: Login callback URL registered with the IdP
        password_login_guest_only: Password logins only for guests and excluded groups
        password_login_exclude_groups: Groups whose members keep password logins
    """

    model_config = ConfigDict(frozen=True)

    provider_url: str
    client_id: str
    client_secret: str | None = None
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    mode: Literal["email", "userid"] = "userid"
    identity_claim: str = "email"
    introspection_enabled: bool = False
    introspection_client_id: str | None = None
    introspection_client_secret: str | None = None
    token_exchange_mode: Literal["refresh-token", "access-token"] | None = None
    provider_params: dict[str, Any] = Field(default_factory=dict)
    auto_provision: AutoProvisionConfig = AutoProvisionConfig()
    auto_update: AutoUpdateConfig = AutoUpdateConfig()
    allowed_backends: tuple[str, ...] | None = None
    post_logout_redirect_uri: str | None = None
    redirect_uri: str | None = None
    password_login_guest_only: bool = False
    password_login_exclude_groups: tuple[str, ...] = ()
    webfinger_properties: dict[str, Any] = Field(default_factory=dict)
    http_timeout_seconds: float = 10.0
    verify_tls: bool = True

    @property
    def issuer(self) -> str:
        """Provider URL without trailing slash."""
        return self.provider_url.rstrip("/")


# ========================================
# Settings blocks
# ========================================


class AutoProvisionSettings(BaseModel):
    """``openid_connect.auto_provision`` block."""

    enabled: bool = False
    email_claim: str | None = None
    display_name_claim: str | None = None
    picture_claim: str | None = None
    groups_claim: str | None = None
    groups: list[str] = Field(default_factory=list)
    provisioning_claim: str | None = None
    provisioning_attribute: str | None = None
    when_disabled: Literal["raise", "ignore"] = "raise"

    @model_validator(mode="after")
    def validate_provisioning_gate(self) -> "AutoProvisionSettings":
        """The gate needs both the claim name and the required value."""
        if bool(self.provisioning_claim) != bool(self.provisioning_attribute):
            raise ValueError(
                "provisioning_claim and provisioning_attribute must be configured together"
            )
        return self


class AutoUpdateSettings(BaseModel):
    """``openid_connect.auto_update`` block."""

    enabled: bool = False
    attributes: list[str] = Field(default_factory=lambda: ["email", "display-name"])

    @field_validator("attributes")
    @classmethod
    def validate_attributes(cls, v: list[str]) -> list[str]:
        """Only known attributes can be synchronized."""
        known = {"email", "display-name", "avatar", "groups"}
        unknown = [a for a in v if a not in known]
        if unknown:
            raise ValueError(
                f"Unknown auto_update attributes: {', '.join(unknown)}. "
                f"Valid attributes: {', '.join(sorted(known))}"
            )
        return v


class BasicAuthGuestOnlySettings(BaseModel):
    """``openid_connect.basic_auth_guest_only`` block.

    When enabled, only guest accounts and members of ``exclude_groups`` may
    log in with a password; everyone else has to go through the IdP.
    """

    enabled: bool = False
    exclude_groups: list[str] = Field(default_factory=list)


class OpenIDConnectSettings(BaseModel):
    """``openid_connect`` block describing the identity provider."""

    provider_url: str
    client_id: str
    client_secret: str | None = None
    scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))
    mode: Literal["email", "userid"] = "userid"
    search_attribute: str = Field(default="email", description="Identity claim name")
    use_token_introspection_endpoint: bool = False
    token_introspection_endpoint_client_id: str | None = None
    token_introspection_endpoint_client_secret: str | None = None
    token_exchange: Literal["refresh-token", "access-token"] | None = None
    provider_params: dict[str, Any] = Field(default_factory=dict)
    auto_provision: AutoProvisionSettings = Field(default_factory=AutoProvisionSettings)
    auto_update: AutoUpdateSettings = Field(default_factory=AutoUpdateSettings)
    basic_auth_guest_only: BasicAuthGuestOnlySettings = Field(
        default_factory=BasicAuthGuestOnlySettings
    )
    allowed_user_backends: list[str] | None = None
    post_logout_redirect_uri: str | None = None
    redirect_uri: str | None = None
    login_button_name: str = "OpenID Connect"
    auto_redirect_on_login_page: bool = False
    webfinger_properties: dict[str, Any] = Field(default_factory=dict)
    insecure: bool = Field(
        default=False, description="Skip TLS verification towards the IdP (debug only)"
    )

    @field_validator("provider_url")
    @classmethod
    def validate_provider_url(cls, v: str) -> str:
        """Validate provider URL format."""
        if not (v.startswith("https://") or v.startswith("http://")):
            raise ValueError("provider_url must be an http(s) URL")
        return v

    @field_validator("scopes")
    @classmethod
    def validate_scopes(cls, v: list[str]) -> list[str]:
        """The openid scope is mandatory for OpenID Connect."""
        if "openid" not in v:
            raise ValueError("scopes must include 'openid'")
        return v


class Settings(BaseSettings):
    """Application configuration with sensible defaults.

    Example:
        # Load from environment only
        settings = Settings()

        # Override specific values
        settings = Settings(
            openid_connect={"provider_url": "https://idp.example.com", "client_id": "rp"}
        )
        provider = settings.provider_config()
    """

    model_config = SettingsConfigDict(
        env_prefix="OIDC_RP_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",  # Ignore unknown fields
    )

    # ========================================
    # Application Settings
    # ========================================

    environment: Literal["dev", "staging", "prod"] = Field(
        default="dev", description="Deployment environment"
    )

    debug: bool = Field(default=False, description="Enable debug mode with verbose logging")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )

    log_format: Literal["json", "text"] = Field(default="json", description="Log output format")

    # ========================================
    # OpenID Connect
    # ========================================

    openid_connect: OpenIDConnectSettings | None = Field(
        default=None, description="Identity provider settings (None = OIDC disabled)"
    )

    http_timeout_seconds: float = Field(
        default=10.0, ge=1.0, le=60.0, description="Timeout for every call to the IdP"
    )

    session_secret: str | None = Field(
        default=None, description="Secret used to sign browser session cookies"
    )

    # ========================================
    # Shared cache
    # ========================================

    cache_backend: Literal["memory", "redis"] = Field(
        default="memory", description="Backend for verification and logout caches"
    )

    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL")

    redis_pool_size: int = Field(default=10, ge=1, le=100, description="Redis pool size")

    redis_timeout_seconds: float = Field(
        default=5.0, ge=0.1, le=60.0, description="Redis operation timeout"
    )

    cache_key_prefix: str = Field(default="oidc-rp:", description="Prefix for all cache keys")

    # ========================================
    # Validators
    # ========================================

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not (v.startswith("redis://") or v.startswith("rediss://") or v.startswith("unix://")):
            raise ValueError("redis_url must use redis://, rediss:// or unix://")
        return v

    @model_validator(mode="after")
    def validate_cache_backend(self) -> "Settings":
        """A process-local cache cannot propagate logout between instances."""
        if self.cache_backend == "memory" and self.environment == "prod":
            warnings.warn(
                "In-memory cache in production does not share logout state between instances",
                UserWarning,
                stacklevel=2,
            )
        return self

    @model_validator(mode="after")
    def validate_session_secret(self) -> "Settings":
        """Require a session secret outside of development."""
        if self.session_secret is None:
            if self.environment in ["staging", "prod"]:
                raise ValueError("session_secret is required for staging/prod environments")
            warnings.warn(
                "session_secret not set, using insecure default for dev only",
                UserWarning,
                stacklevel=2,
            )
            self.session_secret = "INSECURE_DEV_SECRET_DO_NOT_USE_IN_PRODUCTION"
        return self

    # ========================================
    # Helper Methods
    # ========================================

    @property
    def oidc_enabled(self) -> bool:
        """Check if an identity provider is configured."""
        return self.openid_connect is not None

    def provider_config(self) -> ProviderConfig:
        """Build the immutable provider view.

        Returns:
            ProviderConfig for the configured identity provider

        Raises:
            ConfigurationMissingError: If no provider is configured
        """
        oidc = self.openid_connect
        if oidc is None:
            raise ConfigurationMissingError("OpenID Connect is not configured")

        provision = oidc.auto_provision
        return ProviderConfig(
            provider_url=oidc.provider_url,
            client_id=oidc.client_id,
            client_secret=oidc.client_secret,
            scopes=tuple(oidc.scopes),
            mode=oidc.mode,
            identity_claim=oidc.search_attribute,
            introspection_enabled=oidc.use_token_introspection_endpoint,
            introspection_client_id=oidc.token_introspection_endpoint_client_id or oidc.client_id,
            introspection_client_secret=(
                oidc.token_introspection_endpoint_client_secret or oidc.client_secret
            ),
            token_exchange_mode=oidc.token_exchange,
            provider_params=dict(oidc.provider_params),
            auto_provision=AutoProvisionConfig(
                enabled=provision.enabled,
                claim_mappings=ClaimMappings(
                    email=provision.email_claim,
                    display_name=provision.display_name_claim,
                    picture=provision.picture_claim,
                    groups=provision.groups_claim,
                ),
                groups=tuple(provision.groups),
                provisioning_claim=provision.provisioning_claim,
                provisioning_attribute=provision.provisioning_attribute,
                when_disabled=provision.when_disabled,
            ),
            auto_update=AutoUpdateConfig(
                enabled=oidc.auto_update.enabled,
                attributes=tuple(oidc.auto_update.attributes),
            ),
            allowed_backends=(
                tuple(oidc.allowed_user_backends)
                if oidc.allowed_user_backends is not None
                else None
            ),
            post_logout_redirect_uri=oidc.post_logout_redirect_uri,
            redirect_uri=oidc.redirect_uri,
            password_login_guest_only=oidc.basic_auth_guest_only.enabled,
            password_login_exclude_groups=tuple(oidc.basic_auth_guest_only.exclude_groups),
            webfinger_properties=dict(oidc.webfinger_properties),
            http_timeout_seconds=self.http_timeout_seconds,
            verify_tls=not oidc.insecure,
        )

    def to_dict(self) -> dict:
        """Convert settings to dictionary, masking secrets."""
        data = self.model_dump()
        if data.get("session_secret"):
            data["session_secret"] = "***REDACTED***"
        oidc = data.get("openid_connect")
        if oidc:
            for key in ("client_secret", "token_introspection_endpoint_client_secret"):
                if oidc.get(key):
                    oidc[key] = "***REDACTED***"
        return data


# ========================================
# Global Settings Instance
# ========================================

_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Set global settings instance.

    Args:
        settings: Settings instance to use globally
    """
    global _settings
    _settings = settings


def load_settings_from_file(config_file: Path | str) -> Settings:
    """Load settings from YAML or TOML configuration file.

    Args:
        config_file: Path to configuration file

    Returns:
        Settings instance loaded from file

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file format is invalid

    Example:
        settings = load_settings_from_file("config/prod.yaml")
        set_settings(settings)
    """
    config_path = Path(config_file)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    if suffix in [".yaml", ".yml"]:
        import yaml

        with open(config_path) as f:
            config_data = yaml.safe_load(f) or {}
    elif suffix == ".toml":
        import tomllib

        with open(config_path, "rb") as f:
            config_data = tomllib.load(f)
    else:
        raise ValueError(f"Unsupported config file format: {suffix}. Use .yaml, .yml, or .toml")

    return Settings(**config_data)
