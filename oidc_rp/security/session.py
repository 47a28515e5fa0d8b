"""Browser session capabilities consumed by the relying party.

The relying party never owns the browser session. It reads and writes a few
keys through the narrow ``SessionKV`` capability, and asks the host to log a
principal in or out through ``UserSession``.
"""

from abc import ABC, abstractmethod
from collections.abc import MutableMapping
from typing import Any, Protocol, runtime_checkable

from oidc_rp.domain.directory import Principal

# Session keys
ACCESS_TOKEN = "oidc.access-token"
REFRESH_TOKEN = "oidc.refresh-token"
ID_TOKEN = "oidc.id-token"
SESSION_ID = "oidc.session-id"
WITHIN_LOGOUT = "oidc.within-logout"
POST_LOGIN_REDIRECT_URL = "oidc.post-login-redirect-url"

# Login flow state
STATE = "oidc.state"
NONCE = "oidc.nonce"
PKCE_VERIFIER = "oidc.pkce-verifier"

# Transport session marker for repeated bearer requests (WebDAV clients)
DAV_AUTHENTICATED = "oidc.dav-authenticated"

CREDENTIAL_KEYS = (ACCESS_TOKEN, REFRESH_TOKEN, ID_TOKEN)


@runtime_checkable
class SessionKV(Protocol):
    """Minimal key/value view of a session."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...


class MappingSession:
    """``SessionKV`` adapter over a mutable mapping.

    Example:
        session = MappingSession(request.session)
        session.set(ACCESS_TOKEN, "eyJ...")
    """

    def __init__(self, data: MutableMapping[str, Any]) -> None:
        self._data = data

    def get(self, key: str) -> Any | None:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


def clear_credentials(session: SessionKV) -> None:
    """Remove the stored tokens and the IdP session marker."""
    for key in (*CREDENTIAL_KEYS, SESSION_ID):
        session.remove(key)


class UserSession(ABC):
    """Host-side local login state."""

    @abstractmethod
    def is_logged_in(self) -> bool:
        """Whether a principal is currently logged in."""

    @abstractmethod
    def current_user_id(self) -> str | None:
        """Id of the logged-in principal, if any."""

    @abstractmethod
    async def login(self, principal: Principal) -> None:
        """Log the principal in locally."""

    @abstractmethod
    async def logout(self) -> None:
        """Terminate the local session."""
