"""Per-user OIDC token persistence.

One ``oidc_tokens`` row per username. Writers lock the row with
SELECT ... FOR UPDATE so concurrent logins for the same username serialize;
two concurrent first logins race on the unique username index and the loser
falls back to updating the winner's row.

The store never commits. The login service owns the transaction so a failed
login leaves no partial writes.
"""

from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from oidcauth.db.models import OidcToken
from oidcauth.exceptions import ConflictError, NotFoundError
from oidcauth.logging_config import get_logger

logger = get_logger(__name__)

# Columns callers may set through the upsert operations
TOKEN_FIELDS: frozenset[str] = frozenset(
    {
        "user_id",
        "oidc_unique_id",
        "oidc_username",
        "id_token",
        "access_token",
        "refresh_token",
        "expiry",
        "scope",
        "resource",
    }
)


def _apply_fields(token: OidcToken, fields: dict[str, Any]) -> None:
    unknown = set(fields) - TOKEN_FIELDS
    if unknown:
        raise ValueError(f"Unknown token fields: {sorted(unknown)}")
    for name, value in fields.items():
        setattr(token, name, value)


class TokenStore:
    """Token records for one database session."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get_by_username(self, username: str, for_update: bool = False) -> OidcToken | None:
        query = select(OidcToken).where(OidcToken.username == username)
        if for_update:
            query = query.with_for_update()
        result = await self._db.execute(query)
        return result.scalar_one_or_none()

    async def get_by_user_id(self, user_id: str, for_update: bool = False) -> OidcToken | None:
        query = select(OidcToken).where(OidcToken.user_id == user_id)
        if for_update:
            query = query.with_for_update()
        result = await self._db.execute(query)
        return result.scalars().first()

    async def get_by_subject(self, subject: str) -> OidcToken | None:
        """Look up by IdP subject (the ``sub`` claim)."""
        result = await self._db.execute(
            select(OidcToken).where(OidcToken.oidc_unique_id == subject)
        )
        return result.scalars().first()

    async def upsert_by_username(self, username: str, **fields: Any) -> OidcToken:
        """Create or update the record for ``username``."""
        token = await self.get_by_username(username, for_update=True)
        if token is not None:
            _apply_fields(token, fields)
            await self._db.flush()
            return token

        token = OidcToken(username=username)
        _apply_fields(token, fields)
        try:
            async with self._db.begin_nested():
                self._db.add(token)
        except IntegrityError:
            # Lost the insert race; update the row the other writer created
            token = await self.get_by_username(username, for_update=True)
            if token is None:
                raise ConflictError(f"Could not create token record for {username!r}") from None
            _apply_fields(token, fields)
            await self._db.flush()
            logger.debug("Token insert raced, updated existing record", username=username)
            return token

        logger.info("Token record created", username=username)
        return token

    async def upsert_by_user_id(self, user_id: str, **fields: Any) -> OidcToken:
        """Create or update the record linked to ``user_id``.

        A ``username`` field renames the linked record (see rename_username)
        or, when no record is linked yet, names the record to create.
        """
        username = fields.pop("username", None)
        token = await self.get_by_user_id(user_id, for_update=True)

        if token is None:
            if username is None:
                raise NotFoundError(f"No token record for user {user_id!r}")
            return await self.upsert_by_username(username, user_id=user_id, **fields)

        if username is not None and username != token.username:
            token = await self.rename_username(token.username, username)
        _apply_fields(token, fields)
        await self._db.flush()
        return token

    async def link_user_id(self, username: str, user_id: str) -> OidcToken:
        """Attach a resolved local account to the record for ``username``."""
        token = await self.get_by_username(username, for_update=True)
        if token is None:
            raise NotFoundError(f"No token record for username {username!r}")
        token.user_id = user_id
        await self._db.flush()
        logger.info("Token record linked", username=username, user_id=user_id)
        return token

    async def rename_username(self, old_username: str, new_username: str) -> OidcToken:
        """Move a record to a new username in place."""
        token = await self.get_by_username(old_username, for_update=True)
        if token is None:
            raise NotFoundError(f"No token record for username {old_username!r}")
        if old_username == new_username:
            return token

        existing = await self.get_by_username(new_username, for_update=True)
        if existing is not None and existing.id != token.id:
            raise ConflictError(
                f"Cannot rename {old_username!r}: {new_username!r} already has a token record"
            )

        token.username = new_username
        await self._db.flush()
        logger.info("Token record renamed", old_username=old_username, new_username=new_username)
        return token

    async def delete_by_user_id(self, user_id: str) -> int:
        """Remove every record linked to ``user_id``. Returns the count."""
        result = await self._db.execute(delete(OidcToken).where(OidcToken.user_id == user_id))
        count = result.rowcount or 0
        logger.info("Token records deleted", user_id=user_id, count=count)
        return count
