"""Shared pytest fixtures.

These fixtures live at `tests/` scope so they are available to every test
module.

Key goals:
- Provide in-memory fakes for the host collaborators (user directory,
  local user session) that record every write.
- Provide a controllable wall clock so expiry and refresh-window tests are
  exact.
- Provide a mocked protocol client so no test talks to a real IdP.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, Mock

import pytest

from oidc_rp.config import ProviderConfig
from oidc_rp.domain.directory import Principal, UserDirectory
from oidc_rp.infra.cache import CacheBackend, CacheError, CacheFactory, MemoryCacheBackend
from oidc_rp.security.oidc import OIDCClient
from oidc_rp.security.session import MappingSession, UserSession

NOW = 1_700_000_000.0


class UnavailableCacheBackend(CacheBackend):
    """Backend whose every operation fails, like Redis during an outage."""

    async def get(self, key: str):
        raise CacheError("Connection refused")

    async def set(self, key: str, value, ttl_seconds: float | None = None) -> None:
        raise CacheError("Connection refused")

    async def add(self, key: str, value, ttl_seconds: float) -> bool:
        raise CacheError("Connection refused")

    async def delete(self, key: str) -> bool:
        raise CacheError("Connection refused")


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryDirectory(UserDirectory):
    """User directory fake that records every write."""

    def __init__(
        self,
        principals: list[Principal] | None = None,
        groups: tuple[str, ...] = ("staff", "admin"),
        readonly_backends: tuple[str, ...] = (),
    ) -> None:
        self.principals = {p.id: p for p in principals or []}
        self.groups = set(groups)
        self.readonly_backends = set(readonly_backends)
        self.writes: list[tuple] = []
        self.avatars: dict[str, bytes] = {}

    async def find_by_attribute(self, attribute: str, value: str) -> list[Principal]:
        return [p for p in self.principals.values() if getattr(p, attribute, None) == value]

    async def find_by_id(self, principal_id: str) -> Principal | None:
        return self.principals.get(principal_id)

    async def create(self, principal_id: str, password: str) -> Principal | None:
        if principal_id in self.principals:
            return None
        principal = Principal(id=principal_id, enabled=False)
        self.principals[principal_id] = principal
        self.writes.append(("create", principal_id))
        return principal

    async def set_enabled(self, principal: Principal, enabled: bool) -> None:
        self.writes.append(("set_enabled", principal.id, enabled))
        principal.enabled = enabled

    async def set_email(self, principal: Principal, email: str) -> None:
        self.writes.append(("set_email", principal.id, email))
        principal.email = email

    async def set_display_name(self, principal: Principal, display_name: str) -> None:
        self.writes.append(("set_display_name", principal.id, display_name))
        principal.display_name = display_name

    def can_change_email(self, principal: Principal) -> bool:
        return principal.backend not in self.readonly_backends

    def can_change_display_name(self, principal: Principal) -> bool:
        return principal.backend not in self.readonly_backends

    async def add_to_group(self, principal: Principal, group: str) -> bool:
        if group not in self.groups:
            return False
        self.writes.append(("add_to_group", principal.id, group))
        if group not in principal.groups:
            principal.groups.append(group)
        return True

    async def set_avatar(self, principal: Principal, image: bytes, source_url: str) -> None:
        self.writes.append(("set_avatar", principal.id, source_url))
        self.avatars[principal.id] = image


class FakeUserSession(UserSession):
    """Local login state fake."""

    def __init__(self, user_id: str | None = None) -> None:
        self.user_id = user_id
        self.logout_calls = 0
        self.logged_in: list[Principal] = []

    def is_logged_in(self) -> bool:
        return self.user_id is not None

    def current_user_id(self) -> str | None:
        return self.user_id

    async def login(self, principal: Principal) -> None:
        self.user_id = principal.id
        self.logged_in.append(principal)

    async def logout(self) -> None:
        self.user_id = None
        self.logout_calls += 1


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        provider_url="https://idp.example.com",
        client_id="rp-client",
        client_secret="rp-secret",
        redirect_uri="https://rp.example.com/redirect",
        post_logout_redirect_uri="https://rp.example.com/",
    )


@pytest.fixture
def cache_backend() -> MemoryCacheBackend:
    return MemoryCacheBackend()


@pytest.fixture
def cache_factory(cache_backend: MemoryCacheBackend) -> CacheFactory:
    return CacheFactory(cache_backend)


@pytest.fixture
def directory() -> InMemoryDirectory:
    return InMemoryDirectory()


@pytest.fixture
def session() -> MappingSession:
    return MappingSession({})


@pytest.fixture
def user_session() -> FakeUserSession:
    return FakeUserSession(user_id="alice")


@pytest.fixture
def mock_oidc_client() -> Mock:
    """Protocol client mock; every IdP call is an AsyncMock."""
    client = Mock(spec=OIDCClient)
    client.verify_jwt = AsyncMock()
    client.verify_id_token = AsyncMock()
    client.verify_logout_token = AsyncMock()
    client.introspect_token = AsyncMock()
    client.exchange_token = AsyncMock()
    client.refresh_token = AsyncMock()
    client.exchange_authorization_code = AsyncMock()
    client.request_user_info = AsyncMock(return_value={})
    client.revoke_token = AsyncMock()
    client.end_session_url = AsyncMock(return_value=None)
    client.authorization_url = AsyncMock()
    client.get_endpoint = AsyncMock(return_value=None)
    client.get_provider_metadata = AsyncMock(return_value={})
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def make_directory() -> type[InMemoryDirectory]:
    """Directory fake class, for tests that seed their own principals."""
    return InMemoryDirectory


@pytest.fixture
def make_user_session() -> type[FakeUserSession]:
    return FakeUserSession


@pytest.fixture
def unavailable_cache_factory() -> CacheFactory:
    return CacheFactory(UnavailableCacheBackend())
