"""Connection capability checks.

Whether a user may connect their account to the IdP or disconnect it. The
``manageconnection`` capability covers both directions.
"""

from enum import StrEnum

from oidcauth.exceptions import CapabilityError
from oidcauth.services.protocols import CapabilityChecker

CAP_MANAGE = "auth/oidc:manageconnection"
CAP_CONNECT = "auth/oidc:manageconnectionconnect"
CAP_DISCONNECT = "auth/oidc:manageconnectiondisconnect"


class ConnectionMode(StrEnum):
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    BOTH = "both"


async def has_connection_capability(
    checker: CapabilityChecker,
    user_id: str,
    mode: ConnectionMode = ConnectionMode.CONNECT,
) -> bool:
    if await checker.has_capability(CAP_MANAGE, user_id):
        return True

    if mode == ConnectionMode.CONNECT:
        return await checker.has_capability(CAP_CONNECT, user_id)
    if mode == ConnectionMode.DISCONNECT:
        return await checker.has_capability(CAP_DISCONNECT, user_id)
    return await checker.has_capability(CAP_CONNECT, user_id) and await checker.has_capability(
        CAP_DISCONNECT, user_id
    )


async def require_connection_capability(
    checker: CapabilityChecker,
    user_id: str,
    mode: ConnectionMode = ConnectionMode.CONNECT,
) -> None:
    """Raise CapabilityError unless the user holds the capability for ``mode``."""
    if not await has_connection_capability(checker, user_id, mode):
        raise CapabilityError(f"User {user_id!r} may not {mode} their OpenID Connect connection")
