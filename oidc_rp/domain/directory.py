"""User directory contract.

The relying party looks principals up, creates them and updates a handful of
attributes. Storage itself belongs to the host; implementations adapt the
host's user backend to ``UserDirectory``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

# Backend name under which the host keeps guest accounts
GUEST_BACKEND = "guests"


@dataclass
class Principal:
    """Local user identity record.

    Attributes:
        id: Stable local identifier
        email: Primary e-mail address
        display_name: Human-readable name
        backend: Name of the storage backend holding the account
        groups: Group memberships
        enabled: Whether the account may log in
        avatar_url: Source URL of the last avatar applied from claims
    """

    id: str
    email: str | None = None
    display_name: str | None = None
    backend: str = "database"
    groups: list[str] = field(default_factory=list)
    enabled: bool = True
    avatar_url: str | None = None


class UserDirectory(ABC):
    """Host user directory."""

    @abstractmethod
    async def find_by_attribute(self, attribute: str, value: str) -> list[Principal]:
        """Return every principal whose attribute equals the value."""

    @abstractmethod
    async def find_by_id(self, principal_id: str) -> Principal | None:
        """Return the principal with this id, if any."""

    @abstractmethod
    async def create(self, principal_id: str, password: str) -> Principal | None:
        """Create an account.

        Returns:
            The new principal, or None if the backend refused
        """

    @abstractmethod
    async def set_enabled(self, principal: Principal, enabled: bool) -> None:
        """Enable or disable the account."""

    @abstractmethod
    async def set_email(self, principal: Principal, email: str) -> None:
        """Change the e-mail address."""

    @abstractmethod
    async def set_display_name(self, principal: Principal, display_name: str) -> None:
        """Change the display name."""

    @abstractmethod
    def can_change_email(self, principal: Principal) -> bool:
        """Whether the principal's backend allows e-mail changes."""

    @abstractmethod
    def can_change_display_name(self, principal: Principal) -> bool:
        """Whether the principal's backend allows display name changes."""

    @abstractmethod
    async def add_to_group(self, principal: Principal, group: str) -> bool:
        """Add the principal to a group.

        Returns:
            False if the group does not exist
        """

    @abstractmethod
    async def set_avatar(self, principal: Principal, image: bytes, source_url: str) -> None:
        """Store an avatar image downloaded from ``source_url``."""

    def is_guest(self, principal: Principal) -> bool:
        """Whether the principal is a guest account.

        Hosts that mark guests some other way override this.
        """
        return principal.backend == GUEST_BACKEND
