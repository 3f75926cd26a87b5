"""
Top-level test configuration for oidcauth.
"""

import base64
import json
import os
import time
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Ensure test-friendly defaults
os.environ.setdefault("OIDCAUTH_JSON_LOGS", "false")
os.environ.setdefault("OIDCAUTH_LOG_LEVEL", "DEBUG")

from oidcauth.config import LoginFlowConfig  # noqa: E402
from oidcauth.db.models import Base  # noqa: E402
from oidcauth.services.protocols import LocalUser, Role  # noqa: E402

CLIENT_ID = "client-123"


# --- Identity tokens ---


def _b64(data: dict[str, Any]) -> str:
    raw = json.dumps(data).encode()
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


@pytest.fixture
def make_id_token() -> Callable[..., str]:
    """Build an unsigned compact JWT. Claims override sensible defaults."""

    def _make(**claims: Any) -> str:
        payload = {
            "iss": "https://idp.example.com",
            "sub": "u1",
            "aud": CLIENT_ID,
            "exp": int(time.time()) + 3600,
            "iat": int(time.time()),
            "upn": "alice@example.com",
            "nonce": "n-1",
        }
        payload.update(claims)
        payload = {k: v for k, v in payload.items() if v is not None}
        return f"{_b64({'alg': 'RS256', 'typ': 'JWT'})}.{_b64(payload)}.c2lnbmF0dXJl"

    return _make


@pytest.fixture
def oidc_config() -> LoginFlowConfig:
    return LoginFlowConfig(
        client_id=CLIENT_ID,
        client_secret="s3cret",
        auth_endpoint="https://idp.example.com/authorize",
        token_endpoint="https://idp.example.com/token",
        redirect_uri="https://lms.example.com/auth/oidc/callback",
        role_claim_name="groups",
    )


# --- Database ---


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession]:
    """In-memory SQLite session with the oidcauth schema."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")

    # Let SQLAlchemy emit BEGIN itself so SAVEPOINT works under pysqlite
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session
    await engine.dispose()


# --- Host collaborators ---


class InMemoryUsers:
    def __init__(self) -> None:
        self.users: dict[str, LocalUser] = {}
        self._next_id = 1

    def add(self, username: str, **kwargs: Any) -> LocalUser:
        user = LocalUser(id=str(self._next_id), username=username, **kwargs)
        self._next_id += 1
        self.users[user.id] = user
        return user

    async def get_by_id(self, user_id: str) -> LocalUser | None:
        return self.users.get(user_id)

    async def get_by_username(self, username: str) -> LocalUser | None:
        return next((u for u in self.users.values() if u.username == username), None)

    async def create(self, username: str, profile: dict[str, Any]) -> LocalUser:
        return self.add(username, profile=profile)


class InMemoryRoles:
    def __init__(self, shortnames: list[str]) -> None:
        self.roles = [Role(id=str(i), shortname=name) for i, name in enumerate(shortnames)]
        # (user_id, shortname) -> component
        self.assignments: dict[tuple[str, str], str] = {}

    async def list_roles(self) -> list[Role]:
        return list(self.roles)

    async def list_assigned_by_component(self, user_id: str, component: str) -> list[str]:
        return [
            name
            for (uid, name), comp in self.assignments.items()
            if uid == user_id and comp == component
        ]

    async def assign(self, role: Role, user_id: str, component: str) -> None:
        self.assignments.setdefault((user_id, role.shortname), component)

    async def unassign(self, role: Role, user_id: str, component: str) -> None:
        if self.assignments.get((user_id, role.shortname)) == component:
            del self.assignments[(user_id, role.shortname)]


class StaticCapabilities:
    def __init__(self, granted: set[tuple[str, str]] | None = None) -> None:
        self.granted = granted or set()

    async def has_capability(self, capability: str, user_id: str) -> bool:
        return (capability, user_id) in self.granted


class RecordingEventSink:
    def __init__(self) -> None:
        self.events: list[Any] = []

    async def publish(self, event: Any) -> None:
        self.events.append(event)


@pytest.fixture
def users() -> InMemoryUsers:
    return InMemoryUsers()


@pytest.fixture
def roles() -> InMemoryRoles:
    return InMemoryRoles(["Teacher", "Student", "Manager"])


@pytest.fixture
def capabilities() -> StaticCapabilities:
    return StaticCapabilities()


@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()
