"""Authentication events published to the host application."""

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from oidcauth.db.models import utc_now
from oidcauth.logging_config import get_logger

logger = get_logger(__name__)

USER_LOGGED_IN = "user_loggedin"
USER_DISCONNECTED = "user_disconnected"


@dataclass(frozen=True)
class AuthEvent:
    """Something that happened to a local user through OIDC."""

    name: str
    user_id: str
    username: str
    occurred_at: str = field(default_factory=lambda: utc_now().isoformat())


@runtime_checkable
class EventSink(Protocol):
    async def publish(self, event: AuthEvent) -> None: ...


class LoggingEventSink:
    """Default sink: writes each event to the structured log."""

    async def publish(self, event: AuthEvent) -> None:
        logger.info(
            "Auth event",
            auth_event=event.name,
            user_id=event.user_id,
            username=event.username,
            occurred_at=event.occurred_at,
        )
