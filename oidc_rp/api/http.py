"""HTTP surface of the relying party.

Provides:
- Browser session verification middleware (once per request)
- Bearer/PoP authentication middleware (401 on invalid credentials,
  pass-through when no credential is supplied)
- Login, redirect callback, RP-initiated sign-out, front-channel and
  back-channel logout endpoints
- Discovery passthrough, WebFinger, health and metrics endpoints
"""

import logging
from collections.abc import MutableMapping
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import parse_qs

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.sessions import SessionMiddleware

from oidc_rp.config import Settings, get_settings
from oidc_rp.domain.directory import Principal, UserDirectory
from oidc_rp.infra.observability import (
    configure_logging,
    get_correlation_id,
    get_metrics_text,
    set_correlation_id,
)
from oidc_rp.security.errors import AuthenticationError, ProviderError
from oidc_rp.security.login import GENERIC_LOGIN_ERROR, LoginFlowError
from oidc_rp.security.logout import NO_CACHE_HEADERS
from oidc_rp.security.session import MappingSession, UserSession
from oidc_rp.security.session_verifier import SessionState
from oidc_rp.service import AuthService

logger = logging.getLogger(__name__)

USER_ID_KEY = "user_id"

ISSUER_REL = "http://openid.net/specs/connect/1.0/issuer"

# Endpoints served without session or bearer verification
EXEMPT_PATHS = [
    "/health",
    "/metrics",
    "/config",
    "/login",
    "/login-options",
    "/redirect",
    "/logout",
    "/backchannel-logout",
    "/.well-known/webfinger",
]


class RequestUserSession(UserSession):
    """Local login state kept in the signed cookie session."""

    def __init__(self, data: MutableMapping[str, Any]) -> None:
        self._data = data

    def is_logged_in(self) -> bool:
        return bool(self._data.get(USER_ID_KEY))

    def current_user_id(self) -> str | None:
        return self._data.get(USER_ID_KEY)

    async def login(self, principal: Principal) -> None:
        self._data[USER_ID_KEY] = principal.id

    async def logout(self) -> None:
        self._data.pop(USER_ID_KEY, None)


def _unauthorized(message: str, bearer_error: str | None = None) -> JSONResponse:
    headers = {}
    if bearer_error:
        headers["WWW-Authenticate"] = f'Bearer error="{bearer_error}"'
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"error": "Unauthorized", "message": message},
        headers=headers,
    )


class BrowserSessionMiddleware(BaseHTTPMiddleware):
    """Verify the OIDC state of the browser session on every request.

    Example:
        app.add_middleware(BrowserSessionMiddleware, service=service)
    """

    def __init__(
        self, app, service: AuthService | None, exempt_paths: list[str] | None = None
    ):
        super().__init__(app)
        self.service = service
        self.exempt_paths = exempt_paths or EXEMPT_PATHS

    async def dispatch(self, request: Request, call_next) -> Response:
        if (
            self.service is None
            or request.url.path in self.exempt_paths
            or "session" not in request.scope
        ):
            return await call_next(request)

        user_session = RequestUserSession(request.session)
        try:
            state = await self.service.verify_browser_session(
                MappingSession(request.session), user_session
            )
        except AuthenticationError as e:
            logger.warning(
                "Browser session rejected",
                extra={"path": request.url.path, "error_kind": e.kind},
            )
            return _unauthorized(GENERIC_LOGIN_ERROR)

        request.state.session_state = state
        if state is not SessionState.INVALID:
            request.state.user_id = user_session.current_user_id()
        return await call_next(request)


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Authenticate bearer and PoP tokens and attach the principal.

    Requests without an OIDC credential pass through untouched so other
    authentication mechanisms can handle them.
    """

    def __init__(
        self, app, service: AuthService | None, exempt_paths: list[str] | None = None
    ):
        super().__init__(app)
        self.service = service
        self.exempt_paths = exempt_paths or EXEMPT_PATHS

    async def dispatch(self, request: Request, call_next) -> Response:
        if self.service is None or request.url.path in self.exempt_paths:
            return await call_next(request)

        authorization = request.headers.get("Authorization")
        if not authorization:
            return await call_next(request)

        transport_session = (
            MappingSession(request.session) if "session" in request.scope else None
        )
        try:
            principal = await self.service.authenticate_bearer(
                authorization, transport_session=transport_session
            )
        except AuthenticationError as e:
            logger.warning(
                "Bearer authentication rejected",
                extra={"path": request.url.path, "method": request.method, "error_kind": e.kind},
            )
            # Token details are never echoed back
            return _unauthorized("Invalid or expired token", bearer_error="invalid_token")

        if principal is not None:
            request.state.principal = principal
        return await call_next(request)


def create_http_app(
    directory: UserDirectory,
    settings: Settings | None = None,
    service: AuthService | None = None,
) -> FastAPI:
    """Create the relying-party HTTP application.

    Args:
        directory: Host user directory
        settings: Application settings (process-wide settings if omitted)
        service: Prebuilt service (built from settings if omitted)

    Returns:
        FastAPI application

    Example:
        set_settings(load_settings_from_file("config/prod.yaml"))
        app = create_http_app(directory)
    """
    if settings is None:
        settings = get_settings()
    if service is None:
        service = AuthService.from_settings(settings, directory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        if service is not None:
            await service.init()
        yield
        if service is not None:
            await service.aclose()

    app = FastAPI(
        title="OpenID Connect Relying Party",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.auth_service = service

    # Starlette runs the last added middleware first
    app.add_middleware(BearerAuthMiddleware, service=service)
    app.add_middleware(BrowserSessionMiddleware, service=service)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        same_site="lax",
        https_only=settings.environment == "prod",
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Any:
        """Add correlation ID to request context."""
        correlation_id = request.headers.get("X-Correlation-ID", get_correlation_id())
        set_correlation_id(correlation_id)

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def require_service() -> AuthService:
        if service is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="OpenID Connect is not configured",
            )
        return service

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        return {
            "status": "healthy",
            "environment": settings.environment,
            "oidc_enabled": service is not None,
        }

    @app.get("/metrics")
    async def metrics() -> PlainTextResponse:
        return PlainTextResponse(get_metrics_text())

    @app.get("/config")
    async def provider_configuration() -> dict[str, Any]:
        """Discovery document of the configured provider."""
        auth = require_service()
        try:
            return await auth.client.get_provider_metadata()
        except ProviderError as e:
            logger.error("Discovery passthrough failed", extra={"error": str(e)})
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Identity provider unavailable",
            ) from e

    @app.get("/login-options")
    async def login_options() -> dict[str, Any]:
        """How the host login page should offer OpenID Connect."""
        oidc = settings.openid_connect
        if oidc is None:
            return {"enabled": False}
        return {
            "enabled": True,
            "button_name": oidc.login_button_name,
            "auto_redirect": oidc.auto_redirect_on_login_page,
        }

    @app.get("/.well-known/webfinger")
    async def webfinger(resource: str | None = None) -> JSONResponse:
        auth = require_service()
        if not resource:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="resource required")
        link: dict[str, Any] = {"rel": ISSUER_REL, "href": auth.config.issuer}
        if auth.config.webfinger_properties:
            link["properties"] = auth.config.webfinger_properties
        return JSONResponse(
            {"subject": resource, "links": [link]},
            media_type="application/jrd+json",
        )

    @app.get("/login")
    async def login(request: Request, redirect_url: str | None = None) -> Response:
        auth = require_service()
        try:
            url = await auth.login_flow.begin_login(MappingSession(request.session), redirect_url)
        except LoginFlowError as e:
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(e)})
        return RedirectResponse(url, status_code=status.HTTP_302_FOUND)

    @app.get("/redirect")
    async def redirect_callback(
        request: Request, code: str | None = None, state: str | None = None
    ) -> Response:
        auth = require_service()
        try:
            target = await auth.login_flow.complete_login(
                MappingSession(request.session),
                RequestUserSession(request.session),
                code,
                state,
            )
        except LoginFlowError as e:
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(e)})
        return RedirectResponse(target or "/", status_code=status.HTTP_302_FOUND)

    @app.get("/signout")
    async def signout(request: Request) -> Response:
        """RP-initiated logout."""
        auth = require_service()
        end_session_url = await auth.logout(
            MappingSession(request.session), RequestUserSession(request.session)
        )
        return RedirectResponse(end_session_url or "/", status_code=status.HTTP_302_FOUND)

    @app.get("/logout")
    async def frontchannel_logout(
        request: Request, iss: str | None = None, sid: str | None = None
    ) -> Response:
        """Front-channel logout notification from the IdP."""
        auth = require_service()
        await auth.handle_frontchannel_logout(
            iss,
            sid,
            MappingSession(request.session),
            RequestUserSession(request.session),
        )
        return Response(status_code=status.HTTP_200_OK, headers=NO_CACHE_HEADERS)

    @app.post("/backchannel-logout")
    async def backchannel_logout(request: Request) -> Response:
        """Back-channel logout token posted by the IdP."""
        auth = require_service()
        form = parse_qs((await request.body()).decode("utf-8", errors="replace"))
        logout_token = (form.get("logout_token") or [None])[0]
        if not logout_token:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"error": "invalid_request"},
                headers=NO_CACHE_HEADERS,
            )
        try:
            await auth.handle_backchannel_logout(logout_token)
        except AuthenticationError as e:
            logger.warning("Back-channel logout rejected", extra={"error_kind": e.kind})
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"error": "invalid_request"},
                headers=NO_CACHE_HEADERS,
            )
        return Response(status_code=status.HTTP_200_OK, headers=NO_CACHE_HEADERS)

    return app


__all__ = [
    "BearerAuthMiddleware",
    "BrowserSessionMiddleware",
    "RequestUserSession",
    "create_http_app",
]
