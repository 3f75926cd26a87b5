"""Redis-backed anti-forgery state for the authorization redirect.

Created when the browser is sent to the IdP, consumed on the callback
(TTL 5 minutes). Consumption is an atomic GET+DELETE, so of two concurrent
callbacks carrying the same state only the first one sees it.
"""

import json
import secrets
from dataclasses import asdict, dataclass, field

from oidcauth.db.models import utc_now
from oidcauth.logging_config import get_logger
from oidcauth.redis.client import get_redis_client, namespaced

logger = get_logger(__name__)

AUTH_STATE_PREFIX = namespaced("auth_state")
AUTH_STATE_TTL = 300  # 5 minutes


@dataclass
class AuthState:
    """State stored between the IdP redirect and the callback."""

    state: str
    wants_url: str = ""
    nonce: str | None = None
    # Caller-supplied login flow that overrides the configured one on callback
    force_flow: str | None = None
    created_at: str = field(default_factory=lambda: utc_now().isoformat())


def generate_state() -> str:
    """Generate a cryptographically random state parameter."""
    return secrets.token_urlsafe(32)


def generate_nonce() -> str:
    """Generate a cryptographically random OIDC nonce."""
    return secrets.token_urlsafe(32)


async def store_auth_state(auth_state: AuthState) -> str:
    """Store auth state in Redis, keyed by the state value.

    Returns the state key used for lookup.
    """
    redis = get_redis_client()
    key = AUTH_STATE_PREFIX + auth_state.state
    await redis.set(key, json.dumps(asdict(auth_state)), ex=AUTH_STATE_TTL)
    logger.debug("Stored auth state", force_flow=auth_state.force_flow)
    return auth_state.state


async def consume_auth_state(state: str) -> AuthState | None:
    """Consume (get + delete) auth state. Returns None if not found or expired."""
    if not state:
        return None

    redis = get_redis_client()
    key = AUTH_STATE_PREFIX + state

    async with redis.pipeline(transaction=True) as pipe:
        pipe.get(key)
        pipe.delete(key)
        results = await pipe.execute()

    data = results[0]
    if data is None:
        logger.warning("Auth state not found, expired or already used")
        return None

    parsed = json.loads(data)
    return AuthState(**parsed)


async def peek_auth_state(state: str) -> AuthState | None:
    """Read auth state without consuming it."""
    if not state:
        return None

    redis = get_redis_client()
    data = await redis.get(AUTH_STATE_PREFIX + state)
    if data is None:
        return None
    return AuthState(**json.loads(data))
