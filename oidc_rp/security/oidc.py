"""OpenID Connect protocol client.

Thin async client over the identity provider endpoints:
- Discovery document fetch and caching (manual ``provider_params`` win)
- JWKS fetch and caching with stale fallback
- JWT signature verification
- Token introspection (RFC 7662) and token exchange (RFC 8693)
- Authorization code (PKCE), refresh and revocation (RFC 7009) grants
- User info, RP-initiated logout URL and back-channel logout tokens

The client reports wire-level failures only. Deciding what a failure means
for a session (logout, deny, ignore) is the caller's job.
"""

import asyncio
import base64
import hashlib
import json
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx
from authlib.jose import JsonWebKey, JsonWebToken
from authlib.jose.errors import JoseError

from oidc_rp.config import ProviderConfig
from oidc_rp.infra.observability.metrics import record_idp_request
from oidc_rp.security.errors import (
    InvalidTokenError,
    ProviderError,
    SignatureInvalidError,
)

logger = logging.getLogger(__name__)

# Clock skew tolerance (±30 seconds)
CLOCK_SKEW_SECONDS = 30

# Cache TTLs
DISCOVERY_CACHE_TTL_SECONDS = 3600
JWKS_CACHE_TTL_SECONDS = 3600

# Unknown key IDs force a JWKS refetch at most this often
JWKS_MIN_REFRESH_SECONDS = 60

TOKEN_EXCHANGE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:token-exchange"
TOKEN_TYPE_ACCESS_TOKEN = "urn:ietf:params:oauth:token-type:access_token"
TOKEN_TYPE_REFRESH_TOKEN = "urn:ietf:params:oauth:token-type:refresh_token"

BACKCHANNEL_LOGOUT_EVENT = "http://schemas.openid.net/event/backchannel-logout"

# Asymmetric algorithms only; "none" and shared-secret algorithms are never accepted
SIGNING_ALGORITHMS = [
    "RS256",
    "RS384",
    "RS512",
    "PS256",
    "PS384",
    "PS512",
    "ES256",
    "ES384",
    "ES512",
    "EdDSA",
]

_jwt = JsonWebToken(SIGNING_ALGORITHMS)


@dataclass
class CachedJWKS:
    """Cached JWKS (JSON Web Key Set)."""

    keys: dict[str, Any]  # kid -> key mapping
    expires_at: float  # Unix timestamp


@dataclass
class CachedMetadata:
    """Cached discovery document."""

    document: dict[str, Any]
    expires_at: float  # Unix timestamp


def hash_token(token: str | bytes) -> str:
    """Hash a token for cache keys and logs (never store plaintext).

    Returns:
        SHA256 hex digest of the token
    """
    token_bytes = token if isinstance(token, bytes) else token.encode()
    return hashlib.sha256(token_bytes).hexdigest()


def _decode_segment(token: str | bytes, index: int) -> dict[str, Any]:
    """Decode one base64url JSON segment of a compact JWT without verification."""
    try:
        if isinstance(token, bytes):
            token = token.decode("utf-8")

        # JWT format: header.payload.signature
        parts = token.split(".")
        if len(parts) != 3:
            raise InvalidTokenError("Invalid JWT format")

        segment = parts[index]
        segment += "=" * ((4 - len(segment) % 4) % 4)
        data = json.loads(base64.urlsafe_b64decode(segment))
    except InvalidTokenError:
        raise
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidTokenError(f"Failed to decode JWT: {e}") from e

    if not isinstance(data, dict):
        raise InvalidTokenError("JWT segment is not a JSON object")
    return data


class OIDCClient:
    """Async client for one identity provider.

    Example:
        client = OIDCClient(settings.provider_config())
        claims = await client.verify_jwt(access_token)
        body = await client.introspect_token(access_token)
        await client.aclose()
    """

    def __init__(
        self,
        config: ProviderConfig,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the protocol client.

        Args:
            config: Provider settings
            http_client: Optional shared HTTP client (owned by the caller)
            clock: Wall-clock source, injectable for tests
        """
        self.config = config
        self._clock = clock
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=config.http_timeout_seconds,
            verify=config.verify_tls,
        )

        self._metadata_cache: CachedMetadata | None = None
        self._jwks_cache: CachedJWKS | None = None
        self._jwks_forced_at = float("-inf")

        self._metadata_lock = asyncio.Lock()
        self._jwks_lock = asyncio.Lock()

        if not config.verify_tls:
            logger.warning(
                "TLS verification towards the identity provider DISABLED - debug only",
                extra={"provider_url": config.provider_url},
            )

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http_client:
            await self._http_client.aclose()

    # ========================================
    # Transport helpers
    # ========================================

    async def _request(
        self, endpoint: str, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        """Send one request to the IdP with the configured timeout and no retry.

        Raises:
            ProviderError: On network failure or timeout
        """
        started = time.perf_counter()
        try:
            return await self._http_client.request(
                method, url, timeout=self.config.http_timeout_seconds, **kwargs
            )
        except httpx.HTTPError as e:
            logger.error(
                "Request to identity provider failed",
                extra={"endpoint": endpoint, "error": str(e)},
            )
            raise ProviderError(f"Request to {endpoint} endpoint failed: {e}") from e
        finally:
            record_idp_request(endpoint, time.perf_counter() - started)

    async def _post_form(
        self,
        endpoint: str,
        url: str,
        data: dict[str, Any],
        auth: tuple[str, str] | None = None,
    ) -> dict[str, Any]:
        """POST a form and return the JSON body.

        OAuth error responses are returned as bodies carrying an ``error``
        field so callers can tell protocol rejections from transport failures.

        Raises:
            ProviderError: On network failure or a non-JSON answer
        """
        response = await self._request(
            endpoint,
            "POST",
            url,
            data={k: v for k, v in data.items() if v is not None},
            auth=auth,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
        )
        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError(
                f"{endpoint} endpoint returned non-JSON response "
                f"(status {response.status_code})"
            ) from e

        if not isinstance(body, dict):
            raise ProviderError(f"{endpoint} endpoint returned unexpected payload")

        if response.status_code >= 400 and "error" not in body:
            body = {"error": f"http_{response.status_code}", **body}

        if "error" in body:
            logger.warning(
                "Identity provider rejected request",
                extra={
                    "endpoint": endpoint,
                    "status_code": response.status_code,
                    "error": body.get("error"),
                    "error_description": body.get("error_description"),
                },
            )
        return body

    def _client_credentials(self) -> dict[str, Any]:
        return {"client_id": self.config.client_id, "client_secret": self.config.client_secret}

    # ========================================
    # Discovery and keys
    # ========================================

    async def get_provider_metadata(self) -> dict[str, Any]:
        """Return the discovery document merged with manual overrides.

        Raises:
            ProviderError: If discovery fails
        """
        if self._metadata_cache and self._clock() < self._metadata_cache.expires_at:
            return self._metadata_cache.document

        async with self._metadata_lock:
            if self._metadata_cache and self._clock() < self._metadata_cache.expires_at:
                return self._metadata_cache.document

            discovery_url = f"{self.config.issuer}/.well-known/openid-configuration"
            logger.debug("Fetching OIDC discovery", extra={"url": discovery_url})
            response = await self._request("discovery", "GET", discovery_url)
            try:
                response.raise_for_status()
                discovered = response.json()
            except (httpx.HTTPStatusError, ValueError) as e:
                raise ProviderError(f"OIDC discovery failed: {e}") from e

            if not isinstance(discovered, dict):
                raise ProviderError("OIDC discovery returned unexpected payload")

            document = {**discovered, **self.config.provider_params}
            self._metadata_cache = CachedMetadata(
                document=document,
                expires_at=self._clock() + DISCOVERY_CACHE_TTL_SECONDS,
            )
            logger.info(
                "OIDC discovery fetched and cached",
                extra={"provider_url": self.config.provider_url},
            )
            return document

    async def get_endpoint(self, name: str, required: bool = True) -> str | None:
        """Resolve an endpoint, preferring manual ``provider_params``.

        Discovery is only fetched for parameters not configured manually.

        Raises:
            ProviderError: If a required endpoint is unknown
        """
        value = self.config.provider_params.get(name)
        if not value:
            value = (await self.get_provider_metadata()).get(name)
        if not value and required:
            raise ProviderError(f"OIDC discovery missing {name}")
        return value or None

    async def _get_jwks(self, force_refresh: bool = False) -> CachedJWKS | None:
        """Get JWKS from cache or fetch from the provider.

        Forced refreshes closer together than ``JWKS_MIN_REFRESH_SECONDS``
        return the cached keys.

        Returns:
            Cached JWKS, possibly stale, or None if nothing could be fetched
        """
        if (
            not force_refresh
            and self._jwks_cache
            and self._clock() < self._jwks_cache.expires_at
        ):
            return self._jwks_cache

        async with self._jwks_lock:
            if (
                not force_refresh
                and self._jwks_cache
                and self._clock() < self._jwks_cache.expires_at
            ):
                return self._jwks_cache

            if force_refresh and self._jwks_cache:
                now = self._clock()
                if now - self._jwks_forced_at < JWKS_MIN_REFRESH_SECONDS:
                    logger.debug("JWKS refetched recently, keeping cached keys")
                    return self._jwks_cache
                self._jwks_forced_at = now

            try:
                jwks_uri = await self.get_endpoint("jwks_uri")
                logger.debug("Fetching JWKS", extra={"url": jwks_uri})
                response = await self._request("jwks", "GET", jwks_uri)
                response.raise_for_status()
                jwks_data = response.json()

                keys = {}
                for index, key_data in enumerate(jwks_data.get("keys", [])):
                    if key_data.get("use", "sig") != "sig":
                        continue
                    kid = key_data.get("kid") or f"_index_{index}"
                    keys[kid] = JsonWebKey.import_key(key_data)

                if not keys:
                    raise ProviderError("OIDC provider returned no signing keys in JWKS response")

                self._jwks_cache = CachedJWKS(
                    keys=keys, expires_at=self._clock() + JWKS_CACHE_TTL_SECONDS
                )
                logger.info(
                    "JWKS fetched and cached",
                    extra={"key_count": len(keys), "ttl_seconds": JWKS_CACHE_TTL_SECONDS},
                )
                return self._jwks_cache

            except (ProviderError, httpx.HTTPStatusError, ValueError, JoseError) as e:
                logger.error(
                    "Failed to fetch JWKS from OIDC provider",
                    extra={"error": str(e), "provider_url": self.config.provider_url},
                )
                # Return stale cache if available (graceful degradation)
                if self._jwks_cache:
                    logger.warning("Using stale JWKS cache due to fetch failure")
                    return self._jwks_cache
                return None

    # ========================================
    # JWT handling
    # ========================================

    async def verify_jwt(
        self,
        token: str,
        claims_options: dict[str, Any] | None = None,
        validate_claims: bool = False,
    ) -> dict[str, Any]:
        """Verify a JWT signature against the provider's published keys.

        Args:
            token: Compact-serialized JWT
            claims_options: authlib claim options (issuer, audience, ...)
            validate_claims: Also validate exp/nbf/iat and the claim options.
                Access tokens are checked for signature only; their lifetime
                is policy decided by the caller.

        Returns:
            Verified payload

        Raises:
            SignatureInvalidError: If the signature or claims do not verify
            ProviderError: If no signing keys are available
        """
        token_hash = hash_token(token)
        try:
            header = _decode_segment(token, 0)
        except InvalidTokenError as e:
            raise SignatureInvalidError(str(e)) from e
        kid = header.get("kid")

        jwks = await self._get_jwks()
        if jwks and kid and kid not in jwks.keys:
            # Key rotation: refetch before giving up on an unknown kid, rate limited
            jwks = await self._get_jwks(force_refresh=True)
        if not jwks:
            raise ProviderError("Unable to fetch OIDC provider public keys")

        if kid:
            key = jwks.keys.get(kid)
        else:
            key = next(iter(jwks.keys.values())) if len(jwks.keys) == 1 else None
        if key is None:
            logger.warning(
                "No matching signing key for JWT",
                extra={"kid": kid, "token_hash": token_hash[:16]},
            )
            raise SignatureInvalidError(f"No matching key found for kid: {kid}")

        try:
            claims = _jwt.decode(token, key, claims_options=claims_options)
            if validate_claims:
                claims.validate(now=int(self._clock()), leeway=CLOCK_SKEW_SECONDS)
        except (JoseError, ValueError) as e:
            logger.warning(
                "JWT verification failed",
                extra={"error": str(e), "token_hash": token_hash[:16]},
            )
            raise SignatureInvalidError(f"Invalid JWT: {e}") from e

        return dict(claims)

    async def verify_id_token(self, id_token: str, nonce: str | None = None) -> dict[str, Any]:
        """Verify an ID token issued for this client.

        Raises:
            SignatureInvalidError: If signature, issuer, audience, lifetime or nonce do not verify
        """
        claims = await self.verify_jwt(
            id_token,
            claims_options={
                "iss": {"essential": True, "value": self.config.issuer},
                "aud": {"essential": True, "value": self.config.client_id},
                "exp": {"essential": True},
            },
            validate_claims=True,
        )
        if nonce is not None and claims.get("nonce") != nonce:
            raise SignatureInvalidError("ID token nonce mismatch")
        return claims

    async def verify_logout_token(self, logout_token: str) -> dict[str, Any]:
        """Verify a back-channel logout token.

        Returns:
            Verified claims (carrying ``sid`` and/or ``sub``)

        Raises:
            SignatureInvalidError: If the signature or registered claims do not verify
            InvalidTokenError: If the token is not a logout token
        """
        claims = await self.verify_jwt(
            logout_token,
            claims_options={
                "iss": {"essential": True, "value": self.config.issuer},
                "aud": {"essential": True, "value": self.config.client_id},
                "iat": {"essential": True},
            },
            validate_claims=True,
        )
        events = claims.get("events")
        if not isinstance(events, dict) or BACKCHANNEL_LOGOUT_EVENT not in events:
            raise InvalidTokenError("Logout token missing back-channel logout event")
        if "nonce" in claims:
            raise InvalidTokenError("Logout token must not contain a nonce")
        if not claims.get("sid") and not claims.get("sub"):
            raise InvalidTokenError("Logout token carries neither sid nor sub")
        return claims

    # ========================================
    # Token endpoint grants
    # ========================================

    async def introspect_token(
        self, token: str, token_type_hint: str = "access_token"
    ) -> dict[str, Any]:
        """Ask the IdP whether a token is active (RFC 7662).

        Authenticates with the introspection client, which may differ from
        the primary client.

        Returns:
            Introspection body (may carry ``error``, or ``active: false``)
        """
        endpoint = await self.get_endpoint("introspection_endpoint")
        client_id = self.config.introspection_client_id or self.config.client_id
        client_secret = self.config.introspection_client_secret or self.config.client_secret
        return await self._post_form(
            "introspection",
            endpoint,
            {"token": token, "token_type_hint": token_type_hint},
            auth=(client_id, client_secret or ""),
        )

    async def exchange_token(
        self, subject_token: str, subject_token_type: str = TOKEN_TYPE_ACCESS_TOKEN
    ) -> dict[str, Any]:
        """Exchange a token for another one (RFC 8693)."""
        endpoint = await self.get_endpoint("token_endpoint")
        return await self._post_form(
            "token_exchange",
            endpoint,
            {
                "grant_type": TOKEN_EXCHANGE_GRANT_TYPE,
                "subject_token": subject_token,
                "subject_token_type": subject_token_type,
                "requested_token_type": TOKEN_TYPE_ACCESS_TOKEN,
                **self._client_credentials(),
            },
        )

    async def refresh_token(self, refresh_token: str) -> dict[str, Any]:
        """Run the refresh-token grant.

        Returns:
            Token response (may carry ``error``)
        """
        endpoint = await self.get_endpoint("token_endpoint")
        logger.debug("Refreshing access token", extra={"endpoint": "token"})
        return await self._post_form(
            "token",
            endpoint,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                **self._client_credentials(),
            },
        )

    async def exchange_authorization_code(
        self, code: str, code_verifier: str | None, redirect_uri: str
    ) -> dict[str, Any]:
        """Exchange an authorization code for tokens (PKCE).

        Returns:
            Token response (may carry ``error``)
        """
        endpoint = await self.get_endpoint("token_endpoint")
        tokens = await self._post_form(
            "token",
            endpoint,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
                **self._client_credentials(),
            },
        )
        if "error" not in tokens:
            logger.info(
                "Authorization code exchange successful",
                extra={
                    "has_access_token": "access_token" in tokens,
                    "has_refresh_token": "refresh_token" in tokens,
                    "has_id_token": "id_token" in tokens,
                },
            )
        return tokens

    async def request_user_info(self, access_token: str) -> dict[str, Any]:
        """Fetch user info claims for an access token.

        Raises:
            ProviderError: If the endpoint is unknown or the call fails
        """
        endpoint = await self.get_endpoint("userinfo_endpoint")
        response = await self._request(
            "userinfo",
            "GET",
            endpoint,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
        try:
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPStatusError, ValueError) as e:
            raise ProviderError(f"User info request failed: {e}") from e
        if not isinstance(body, dict):
            raise ProviderError("User info endpoint returned unexpected payload")
        return body

    async def revoke_token(self, token: str, token_type_hint: str = "access_token") -> None:
        """Revoke a token (RFC 7009).

        Revocation is optional for providers; a missing endpoint is logged
        and ignored.

        Raises:
            ProviderError: If the provider rejects the revocation
        """
        endpoint = await self.get_endpoint("revocation_endpoint", required=False)
        if not endpoint:
            logger.warning(
                "OIDC provider does not support token revocation",
                extra={"provider_url": self.config.provider_url},
            )
            return

        response = await self._request(
            "revocation",
            "POST",
            endpoint,
            data={"token": token, "token_type_hint": token_type_hint, **self._client_credentials()},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        # RFC 7009: invalid tokens also return 200 (idempotent)
        if response.status_code != 200:
            raise ProviderError(
                f"Token revocation failed with status {response.status_code}: {response.text}"
            )
        logger.info("Token revocation successful")

    # ========================================
    # Browser redirects
    # ========================================

    async def end_session_url(
        self, id_token: str | None, post_logout_redirect_uri: str | None = None
    ) -> str | None:
        """Build the RP-initiated logout URL.

        Returns:
            End-session URL, or None if the provider has no end-session endpoint
        """
        endpoint = await self.get_endpoint("end_session_endpoint", required=False)
        if not endpoint:
            return None
        params = {
            "id_token_hint": id_token,
            "post_logout_redirect_uri": post_logout_redirect_uri,
            "client_id": self.config.client_id,
        }
        query = urlencode({k: v for k, v in params.items() if v})
        separator = "&" if "?" in endpoint else "?"
        return f"{endpoint}{separator}{query}"

    async def authorization_url(
        self,
        redirect_uri: str,
        state: str,
        nonce: str,
        pkce_challenge: str,
        **extra_params: Any,
    ) -> str:
        """Build the authorization request URL for this provider."""
        endpoint = await self.get_endpoint("authorization_endpoint")
        url, _ = build_authorization_url(
            authorization_endpoint=endpoint,
            client_id=self.config.client_id,
            redirect_uri=redirect_uri,
            scope=" ".join(self.config.scopes),
            state=state,
            pkce_challenge=pkce_challenge,
            nonce=nonce,
            **extra_params,
        )
        return url


# ========================================
# Authorization Code Flow (PKCE)
# ========================================


@dataclass
class PKCEParams:
    """PKCE (Proof Key for Code Exchange) parameters.

    Attributes:
        verifier: Random code verifier (43-128 characters, base64url-encoded)
        challenge: SHA256 hash of verifier, base64url-encoded
        challenge_method: Always "S256"
    """

    verifier: str
    challenge: str
    challenge_method: str = "S256"


def generate_pkce_verifier(length: int = 43) -> str:
    """Generate a cryptographically secure PKCE code verifier (RFC 7636 4.1).

    Raises:
        ValueError: If length is not in range [43, 128]
    """
    if not 43 <= length <= 128:
        raise ValueError("PKCE verifier length must be between 43 and 128 characters")

    verifier = base64.urlsafe_b64encode(secrets.token_bytes(length)).rstrip(b"=").decode("ascii")
    return verifier[:length]


def generate_pkce_challenge(verifier: str) -> str:
    """Derive the S256 code challenge: BASE64URL(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce_params(verifier_length: int = 43) -> PKCEParams:
    """Generate a verifier and its challenge."""
    verifier = generate_pkce_verifier(verifier_length)
    return PKCEParams(verifier=verifier, challenge=generate_pkce_challenge(verifier))


def build_authorization_url(
    authorization_endpoint: str,
    client_id: str,
    redirect_uri: str,
    scope: str = "openid profile email",
    state: str | None = None,
    pkce_challenge: str | None = None,
    pkce_challenge_method: str = "S256",
    **extra_params: Any,
) -> tuple[str, str]:
    """Build an authorization code request URL with PKCE.

    Args:
        authorization_endpoint: Provider authorization endpoint
        client_id: OAuth client ID
        redirect_uri: Callback URL registered with the provider
        scope: Space-separated scopes
        state: CSRF state (randomly generated if not provided)
        pkce_challenge: PKCE code challenge (omitted from the URL if not provided)
        pkce_challenge_method: PKCE challenge method
        **extra_params: Additional query parameters (nonce, prompt, ...)

    Returns:
        Tuple of (authorization_url, state)

    Example:
        url, state = build_authorization_url(
            authorization_endpoint="https://idp.example.com/authorize",
            client_id="rp",
            redirect_uri="https://rp.example.com/redirect",
        )
    """
    if state is None:
        state = secrets.token_urlsafe(32)

    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
    }
    if pkce_challenge:
        params["code_challenge"] = pkce_challenge
        params["code_challenge_method"] = pkce_challenge_method
    params.update({k: v for k, v in extra_params.items() if v is not None})

    separator = "&" if "?" in authorization_endpoint else "?"
    return f"{authorization_endpoint}{separator}{urlencode(params)}", state
