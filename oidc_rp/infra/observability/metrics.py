"""Prometheus metrics for observability.

Provides metrics for token verification, verification caches, session
refresh, logout propagation, bearer authentication, provisioning and
calls to the identity provider.
"""

import logging

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

# Global registry for metrics
_registry = CollectorRegistry()


# Token verification
token_validations_total = Counter(
    "oidc_rp_token_validations_total",
    "Total number of token validations against the identity provider",
    ["method", "status"],
    registry=_registry,
)

# Verification cache
verification_cache_hits_total = Counter(
    "oidc_rp_verification_cache_hits_total",
    "Total number of verification cache hits",
    ["namespace"],
    registry=_registry,
)

verification_cache_misses_total = Counter(
    "oidc_rp_verification_cache_misses_total",
    "Total number of verification cache misses",
    ["namespace"],
    registry=_registry,
)

# Browser sessions
session_verifications_total = Counter(
    "oidc_rp_session_verifications_total",
    "Total number of browser session verifications by resulting state",
    ["state"],
    registry=_registry,
)

token_refreshes_total = Counter(
    "oidc_rp_token_refreshes_total",
    "Total number of refresh-token grants",
    ["status"],
    registry=_registry,
)

logouts_total = Counter(
    "oidc_rp_logouts_total",
    "Total number of logouts by trigger",
    ["trigger"],
    registry=_registry,
)

# Bearer authentication
bearer_authentications_total = Counter(
    "oidc_rp_bearer_authentications_total",
    "Total number of bearer token authentications",
    ["status"],
    registry=_registry,
)

# Password logins checked against the guest-only restriction
password_login_checks_total = Counter(
    "oidc_rp_password_login_checks_total",
    "Total number of password logins checked against the guest-only restriction",
    ["status"],
    registry=_registry,
)

# Provisioning
provisioning_events_total = Counter(
    "oidc_rp_provisioning_events_total",
    "Total number of account provisioning and attribute sync events",
    ["event", "status"],
    registry=_registry,
)

# Identity provider requests
idp_request_duration_seconds = Histogram(
    "oidc_rp_idp_request_duration_seconds",
    "Duration of requests to the identity provider in seconds",
    ["endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=_registry,
)


def get_registry() -> CollectorRegistry:
    """Get the metrics registry.

    Returns:
        Prometheus collector registry
    """
    return _registry


def get_metrics_text() -> str:
    """Get metrics in Prometheus text format.

    Returns:
        Metrics in Prometheus exposition format
    """
    return generate_latest(_registry).decode("utf-8")


def record_token_validation(method: str, status: str) -> None:
    """Record a token validation.

    Args:
        method: Verification method (jwt/introspection)
        status: Outcome (valid or an error kind)
    """
    token_validations_total.labels(method=method, status=status).inc()


def record_cache_lookup(namespace: str, hit: bool) -> None:
    """Record a verification cache lookup.

    Args:
        namespace: Cache namespace (session/bearer)
        hit: Whether the lookup was served from cache
    """
    if hit:
        verification_cache_hits_total.labels(namespace=namespace).inc()
    else:
        verification_cache_misses_total.labels(namespace=namespace).inc()


def record_session_verification(state: str) -> None:
    """Record the state a browser session verification ended in."""
    session_verifications_total.labels(state=state).inc()


def record_token_refresh(status: str) -> None:
    """Record a refresh-token grant.

    Args:
        status: success/failed/skipped/no_refresh_token
    """
    token_refreshes_total.labels(status=status).inc()


def record_logout(trigger: str) -> None:
    """Record a logout.

    Args:
        trigger: What caused it (user/sid_invalid/token_invalid/frontchannel/backchannel)
    """
    logouts_total.labels(trigger=trigger).inc()


def record_bearer_authentication(status: str) -> None:
    """Record a bearer authentication.

    Args:
        status: success/declined/fast_path or an error kind
    """
    bearer_authentications_total.labels(status=status).inc()


def record_password_login_check(status: str) -> None:
    """Record a guest-only password login check.

    Args:
        status: guest/excluded_group/denied
    """
    password_login_checks_total.labels(status=status).inc()


def record_provisioning_event(event: str, success: bool) -> None:
    """Record a provisioning or attribute sync event.

    Args:
        event: create/sync/avatar
        success: Whether the event succeeded
    """
    status = "success" if success else "failed"
    provisioning_events_total.labels(event=event, status=status).inc()


def record_idp_request(endpoint: str, duration: float) -> None:
    """Record the duration of a request to the identity provider.

    Args:
        endpoint: Logical endpoint name (discovery/jwks/introspection/token/...)
        duration: Request duration in seconds
    """
    idp_request_duration_seconds.labels(endpoint=endpoint).observe(duration)
