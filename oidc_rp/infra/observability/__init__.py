"""Observability infrastructure for the OpenID Connect relying party.

Provides structured logging and Prometheus metrics for monitoring
token verification, session lifecycle and provisioning.
"""

from oidc_rp.infra.observability.logging import (
    CorrelationIDFilter,
    CredentialRedactionFilter,
    JSONFormatter,
    configure_logging,
    get_correlation_id,
    redact_credentials,
    set_correlation_id,
)
from oidc_rp.infra.observability.metrics import (
    get_metrics_text,
    get_registry,
    record_bearer_authentication,
    record_cache_lookup,
    record_idp_request,
    record_logout,
    record_password_login_check,
    record_provisioning_event,
    record_session_verification,
    record_token_refresh,
    record_token_validation,
)

__all__ = [
    # Logging
    "configure_logging",
    "get_correlation_id",
    "set_correlation_id",
    "redact_credentials",
    "CorrelationIDFilter",
    "CredentialRedactionFilter",
    "JSONFormatter",
    # Metrics
    "get_registry",
    "get_metrics_text",
    "record_token_validation",
    "record_cache_lookup",
    "record_session_verification",
    "record_token_refresh",
    "record_logout",
    "record_bearer_authentication",
    "record_password_login_check",
    "record_provisioning_event",
    "record_idp_request",
]
