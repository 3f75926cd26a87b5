"""
Collaborator protocols.

The host application owns user records, roles and capabilities. The relying
party reaches them only through these protocols, so any host can plug in by
providing objects that satisfy them.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

# --- Data Types ---


@dataclass(frozen=True)
class Role:
    """A host role, identified by shortname. Never created or destroyed here."""

    id: str
    shortname: str


@dataclass
class LocalUser:
    """A host user account as seen by the relying party."""

    id: str
    username: str
    auth: str = "oidc"
    suspended: bool = False
    profile: dict[str, Any] = field(default_factory=dict)


# --- Protocols ---


@runtime_checkable
class UserDirectory(Protocol):
    """Host user storage."""

    async def get_by_id(self, user_id: str) -> LocalUser | None:
        """Look up a user by id."""
        ...

    async def get_by_username(self, username: str) -> LocalUser | None:
        """Look up a user by username."""
        ...

    async def create(self, username: str, profile: dict[str, Any]) -> LocalUser:
        """Create a user authenticated by this component."""
        ...


@runtime_checkable
class RoleAssignmentService(Protocol):
    """Host role assignment, scoped to the system context."""

    async def list_roles(self) -> list[Role]:
        """Every role that can be assigned."""
        ...

    async def list_assigned_by_component(self, user_id: str, component: str) -> list[str]:
        """Shortnames of roles a component assigned to a user."""
        ...

    async def assign(self, role: Role, user_id: str, component: str) -> None:
        """Assign a role. Assigning an already-assigned role is a no-op."""
        ...

    async def unassign(self, role: Role, user_id: str, component: str) -> None:
        """Remove a role, only if it was assigned by ``component``."""
        ...


@runtime_checkable
class CapabilityChecker(Protocol):
    """Host permission checks in a user's own context."""

    async def has_capability(self, capability: str, user_id: str) -> bool:
        """Whether ``user_id`` holds ``capability``."""
        ...
