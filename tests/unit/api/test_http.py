"""Tests for the relying-party HTTP surface."""

from unittest.mock import AsyncMock, Mock

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from oidc_rp.api.http import create_http_app
from oidc_rp.config import Settings
from oidc_rp.domain.directory import Principal
from oidc_rp.security.errors import (
    CacheUnavailableError,
    ProviderError,
    SignatureInvalidError,
    TokenExpiredError,
)
from oidc_rp.security.login import LoginFlowError
from oidc_rp.security.oidc import OIDCClient
from oidc_rp.security.session_verifier import SessionState
from oidc_rp.service import AuthService

OIDC_BLOCK = {
    "provider_url": "https://idp.example.com",
    "client_id": "rp-client",
    "login_button_name": "Company SSO",
    "webfinger_properties": {"tenant": "acme"},
}


@pytest.fixture
def settings() -> Settings:
    return Settings(session_secret="test-secret", debug=True, openid_connect=OIDC_BLOCK)


@pytest.fixture
def service(settings) -> Mock:
    service = Mock(spec=AuthService)
    service.config = settings.provider_config()
    service.client = Mock(spec=OIDCClient)
    service.client.get_provider_metadata = AsyncMock(return_value={"issuer": "x"})
    service.verify_browser_session = AsyncMock(return_value=SessionState.NO_SESSION)
    service.authenticate_bearer = AsyncMock(return_value=None)
    service.handle_frontchannel_logout = AsyncMock(return_value=True)
    service.handle_backchannel_logout = AsyncMock(return_value="S1")
    service.logout = AsyncMock(return_value="https://idp.example.com/logout?id_token_hint=x")
    service.login_flow = Mock()
    service.login_flow.begin_login = AsyncMock(return_value="https://idp.example.com/authorize")
    service.login_flow.complete_login = AsyncMock(return_value="/apps/files")
    return service


@pytest.fixture
def app(settings, directory, service):
    app = create_http_app(directory, settings, service=service)

    @app.get("/protected")
    async def protected(request: Request) -> dict:
        principal = getattr(request.state, "principal", None)
        return {
            "principal": principal.id if principal else None,
            "user_id": getattr(request.state, "user_id", None),
        }

    return app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


def test_health_and_metrics_without_provider(monkeypatch, directory) -> None:
    monkeypatch.setattr("oidc_rp.api.http.get_metrics_text", lambda: "metrics-ok")
    app = create_http_app(directory, Settings(session_secret="s"))
    client = TestClient(app)

    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["oidc_enabled"] is False

    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "metrics-ok" in resp.text

    assert client.get("/config").status_code == 404
    assert client.get("/login-options").json() == {"enabled": False}


def test_process_wide_settings_used_by_default(monkeypatch, directory) -> None:
    monkeypatch.setattr(
        "oidc_rp.config._settings",
        Settings(session_secret="s", environment="staging", openid_connect=OIDC_BLOCK),
    )
    client = TestClient(create_http_app(directory))

    health = client.get("/health").json()
    assert health["environment"] == "staging"
    assert health["oidc_enabled"] is True


class TestBearerMiddleware:
    def test_no_credential_passes_through(self, client, service) -> None:
        resp = client.get("/protected")

        assert resp.status_code == 200
        assert resp.json()["principal"] is None
        service.authenticate_bearer.assert_not_called()

    def test_valid_token_attaches_principal(self, client, service) -> None:
        service.authenticate_bearer.return_value = Principal(id="alice")

        resp = client.get("/protected", headers={"Authorization": "Bearer good"})

        assert resp.status_code == 200
        assert resp.json()["principal"] == "alice"
        assert service.authenticate_bearer.call_args.args[0] == "Bearer good"

    @pytest.mark.parametrize(
        "error", [TokenExpiredError("Token expired"), SignatureInvalidError("bad")]
    )
    def test_invalid_token_rejected(self, client, service, error) -> None:
        service.authenticate_bearer.side_effect = error

        resp = client.get("/protected", headers={"Authorization": "Bearer bad"})

        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == 'Bearer error="invalid_token"'
        assert "bad" not in resp.json()["message"]

    def test_exempt_paths_skip_authentication(self, client, service) -> None:
        resp = client.get("/health", headers={"Authorization": "Bearer bad"})

        assert resp.status_code == 200
        service.authenticate_bearer.assert_not_called()

    def test_cache_outage_is_401_not_500(
        self, settings, directory, unavailable_cache_factory, clock
    ) -> None:
        service = AuthService(
            settings.provider_config(), directory, unavailable_cache_factory.backend, clock=clock
        )
        app = create_http_app(directory, settings, service=service)

        @app.get("/protected")
        async def protected() -> dict:
            return {}

        resp = TestClient(app).get("/protected", headers={"Authorization": "Bearer abc"})

        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == 'Bearer error="invalid_token"'


class TestBrowserSessionMiddleware:
    def test_verification_failure_is_generic_401(self, client, service) -> None:
        service.verify_browser_session.side_effect = SignatureInvalidError("bad signature")

        resp = client.get("/protected")

        assert resp.status_code == 401
        assert resp.json()["message"] == "cannot complete sign-in"

    def test_unreadable_session_liveness_is_401(self, client, service) -> None:
        service.verify_browser_session.side_effect = CacheUnavailableError(
            "IdP session liveness unavailable"
        )

        resp = client.get("/protected")

        assert resp.status_code == 401
        assert resp.json()["message"] == "cannot complete sign-in"

    def test_state_recorded(self, client, service) -> None:
        resp = client.get("/protected")

        assert resp.status_code == 200
        service.verify_browser_session.assert_awaited_once()


class TestLoginRoutes:
    def test_login_redirects_to_idp(self, client, service) -> None:
        resp = client.get("/login", params={"redirect_url": "/apps"}, follow_redirects=False)

        assert resp.status_code == 302
        assert resp.headers["location"] == "https://idp.example.com/authorize"
        assert service.login_flow.begin_login.call_args.args[1] == "/apps"

    def test_login_failure(self, client, service) -> None:
        service.login_flow.begin_login.side_effect = LoginFlowError("provider_error")

        resp = client.get("/login", follow_redirects=False)

        assert resp.status_code == 400
        assert resp.json() == {"error": "cannot complete sign-in"}

    def test_redirect_callback(self, client, service) -> None:
        resp = client.get(
            "/redirect", params={"code": "c", "state": "s"}, follow_redirects=False
        )

        assert resp.status_code == 302
        assert resp.headers["location"] == "/apps/files"
        args = service.login_flow.complete_login.call_args.args
        assert args[2:] == ("c", "s")

    def test_signout_redirects_to_idp(self, client, service) -> None:
        resp = client.get("/signout", follow_redirects=False)

        assert resp.status_code == 302
        assert resp.headers["location"].startswith("https://idp.example.com/logout")

    def test_login_options(self, client) -> None:
        assert client.get("/login-options").json() == {
            "enabled": True,
            "button_name": "Company SSO",
            "auto_redirect": False,
        }


class TestLogoutRoutes:
    def test_frontchannel_logout(self, client, service) -> None:
        resp = client.get("/logout", params={"iss": "https://idp.example.com", "sid": "S1"})

        assert resp.status_code == 200
        assert resp.headers["Cache-Control"] == "no-cache, no-store"
        assert resp.headers["Pragma"] == "no-cache"
        args = service.handle_frontchannel_logout.call_args.args
        assert args[:2] == ("https://idp.example.com", "S1")

    def test_backchannel_logout(self, client, service) -> None:
        resp = client.post("/backchannel-logout", data={"logout_token": "token"})

        assert resp.status_code == 200
        service.handle_backchannel_logout.assert_awaited_once_with("token")

    def test_backchannel_logout_without_token(self, client, service) -> None:
        resp = client.post("/backchannel-logout", data={})

        assert resp.status_code == 400
        assert resp.json() == {"error": "invalid_request"}
        service.handle_backchannel_logout.assert_not_called()

    def test_backchannel_logout_invalid_token(self, client, service) -> None:
        service.handle_backchannel_logout.side_effect = SignatureInvalidError("bad")

        resp = client.post("/backchannel-logout", data={"logout_token": "token"})

        assert resp.status_code == 400
        assert resp.headers["Cache-Control"] == "no-cache, no-store"


class TestDiscoveryRoutes:
    def test_webfinger(self, client) -> None:
        resp = client.get(
            "/.well-known/webfinger", params={"resource": "acct:alice@example.com"}
        )

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/jrd+json")
        assert resp.json() == {
            "subject": "acct:alice@example.com",
            "links": [
                {
                    "rel": "http://openid.net/specs/connect/1.0/issuer",
                    "href": "https://idp.example.com",
                    "properties": {"tenant": "acme"},
                }
            ],
        }

    def test_webfinger_requires_resource(self, client) -> None:
        assert client.get("/.well-known/webfinger").status_code == 400

    def test_config_passthrough(self, client) -> None:
        assert client.get("/config").json() == {"issuer": "x"}

    def test_config_provider_failure(self, client, service) -> None:
        service.client.get_provider_metadata.side_effect = ProviderError("down")

        assert client.get("/config").status_code == 502
