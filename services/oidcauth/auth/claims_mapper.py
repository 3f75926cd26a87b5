"""Role-claim to local-role mapper.

Reads a flat list of group names from one claim of the identity token and
compares it against the shortnames of the local roles. Produces a diff; the
caller applies it to the role-assignment service once the login has fully
succeeded.

Nested or ID-based group claims (group object IDs needing a directory lookup)
are not resolved here.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from oidcauth.auth.jwt import IdToken
from oidcauth.logging_config import get_logger
from oidcauth.services.protocols import Role

logger = get_logger(__name__)


@dataclass(frozen=True)
class RoleDiff:
    """Roles to assign and to unassign for one user."""

    assign: list[Role] = field(default_factory=list)
    unassign: list[Role] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.assign and not self.unassign


def claimed_groups(claim_value: Any) -> frozenset[str]:
    """Group names from a role claim value.

    Anything other than a list of strings counts as no groups.
    """
    if not isinstance(claim_value, list | tuple):
        return frozenset()
    if not all(isinstance(g, str) for g in claim_value):
        return frozenset()
    return frozenset(claim_value)


def sync_roles(
    id_token: IdToken,
    local_roles: Sequence[Role],
    role_claim_name: str,
    assigned_by_plugin: Iterable[str] = (),
) -> RoleDiff:
    """Compute the role diff for a user from their identity token.

    Args:
        id_token: Parsed identity token.
        local_roles: Every candidate local role.
        role_claim_name: Claim holding the list of group names.
        assigned_by_plugin: Shortnames of roles this component assigned
            earlier. Only these can be unassigned.

    Returns:
        RoleDiff; ordering follows ``local_roles``.
    """
    groups = claimed_groups(id_token.claim(role_claim_name))
    previously_assigned = set(assigned_by_plugin)

    assign: list[Role] = []
    unassign: list[Role] = []
    for role in local_roles:
        if role.shortname in groups:
            assign.append(role)
        elif role.shortname in previously_assigned:
            unassign.append(role)

    logger.debug(
        "Role claim mapped",
        claim=role_claim_name,
        groups=sorted(groups),
        assign=[r.shortname for r in assign],
        unassign=[r.shortname for r in unassign],
    )
    return RoleDiff(assign=assign, unassign=unassign)
