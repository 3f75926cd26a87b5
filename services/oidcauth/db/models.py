"""
SQLAlchemy database models for oidcauth.

The relying party owns a single table. Local users and roles belong to the
host application and are reached through the collaborator protocols in
``oidcauth.services.protocols``.

All models use:
- UUIDv7 primary keys (time-sortable)
- snake_case column names
- Plural table names
- TIMESTAMPTZ with UTC for all timestamps
"""

import time
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def generate_uuid7() -> uuid.UUID:
    """Generate a UUIDv7 (time-sortable UUID)."""
    timestamp_ms = int(time.time() * 1000)
    rand_bytes = uuid.uuid4().bytes[6:]

    uuid_bytes = (
        timestamp_ms.to_bytes(6, "big")
        + bytes([0x70 | (rand_bytes[0] & 0x0F)])  # Version 7
        + bytes([0x80 | (rand_bytes[1] & 0x3F)])  # Variant
        + rand_bytes[2:]
    )
    return uuid.UUID(bytes=uuid_bytes)


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all models."""


class OidcToken(Base):
    """Tokens issued by the IdP for one local identity.

    One row per username. ``user_id`` stays NULL until the local account has
    been resolved, and is set exactly once that happens.
    """

    __tablename__ = "oidc_tokens"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=generate_uuid7)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    # IdP identity: subject claim and the username claim as the IdP sent it
    oidc_unique_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    oidc_username: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    id_token: Mapped[str] = mapped_column(Text, nullable=False, default="")
    access_token: Mapped[str] = mapped_column(Text, nullable=False, default="")
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False, default="")
    expiry: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scope: Mapped[str] = mapped_column(Text, nullable=False, default="")
    resource: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        Index("ix_oidc_tokens_user_id", "user_id"),
        Index("ix_oidc_tokens_oidc_unique_id", "oidc_unique_id"),
    )
