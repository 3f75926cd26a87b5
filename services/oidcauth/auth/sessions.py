"""Redis-backed browser sessions.

Holds what the relying party needs to remember about one browser between
requests: the redirect opt-out, the IdP ``session_state`` used by the
session-check frame, and which local user signed in. The browser keeps only
an opaque id in a cookie.
"""

import json
import secrets
from dataclasses import dataclass, field

from oidcauth.auth.redirect import SessionRedirectState
from oidcauth.config import settings
from oidcauth.db.models import utc_now
from oidcauth.logging_config import get_logger
from oidcauth.redis.client import get_redis_client, namespaced

logger = get_logger(__name__)

BROWSER_SESSION_PREFIX = namespaced("browser_session")


def _session_ttl() -> int:
    """Session TTL in seconds from config."""
    return settings.session_ttl_hours * 3600


@dataclass
class BrowserSession:
    """Server-side state for one browser."""

    redirect: SessionRedirectState = field(default_factory=SessionRedirectState)
    session_state: str | None = None
    user_id: str | None = None
    username: str | None = None
    created_at: str = field(default_factory=lambda: utc_now().isoformat())

    # Id is not stored in Redis, it's the key
    id: str = field(default="", repr=False)

    def to_json(self) -> str:
        return json.dumps(
            {
                "opt_out": self.redirect.opt_out,
                "session_state": self.session_state,
                "user_id": self.user_id,
                "username": self.username,
                "created_at": self.created_at,
            }
        )

    @classmethod
    def from_json(cls, session_id: str, data: str) -> "BrowserSession":
        parsed = json.loads(data)
        return cls(
            redirect=SessionRedirectState(opt_out=bool(parsed.get("opt_out", False))),
            session_state=parsed.get("session_state"),
            user_id=parsed.get("user_id"),
            username=parsed.get("username"),
            created_at=parsed.get("created_at") or utc_now().isoformat(),
            id=session_id,
        )


def generate_session_id() -> str:
    """Generate a cryptographically random browser session id."""
    return secrets.token_urlsafe(32)


async def load_browser_session(session_id: str | None) -> BrowserSession:
    """Load a browser session, or start a fresh one when missing or expired."""
    if session_id:
        redis = get_redis_client()
        data = await redis.get(BROWSER_SESSION_PREFIX + session_id)
        if data is not None:
            return BrowserSession.from_json(session_id, data)
    return BrowserSession(id=generate_session_id())


async def save_browser_session(session: BrowserSession) -> None:
    """Write the session back, resetting its TTL."""
    redis = get_redis_client()
    if not session.id:
        session.id = generate_session_id()
    await redis.set(BROWSER_SESSION_PREFIX + session.id, session.to_json(), ex=_session_ttl())


async def delete_browser_session(session_id: str) -> bool:
    """Drop a browser session. Returns True if it existed."""
    redis = get_redis_client()
    deleted = await redis.delete(BROWSER_SESSION_PREFIX + session_id)
    if deleted:
        logger.info("Browser session removed")
    return bool(deleted)
