"""
Database access for the token store.

One async engine per process. Request handlers get a session from get_db();
units of work that must land together (a login, a disconnect, a refresh) run
inside ``transaction()``, which commits on success and rolls back on any
error.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from oidcauth.config import settings
from oidcauth.logging_config import get_logger

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db() -> None:
    """Create the engine and check the database answers."""
    global _engine, _async_session_factory  # noqa: PLW0603
    logger.info(
        "Initializing database connection",
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )

    _engine = create_async_engine(
        str(settings.database_url),
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )
    # Objects stay readable after commit; the login outcome is built from them
    _async_session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with _engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connection established")


async def close_db() -> None:
    global _engine, _async_session_factory  # noqa: PLW0603
    if _engine is None:
        return
    logger.info("Closing database connection pool")
    await _engine.dispose()
    _engine = None
    _async_session_factory = None


async def get_db() -> AsyncGenerator[AsyncSession]:
    """FastAPI dependency: one session per request, never auto-committed."""
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized, call init_db() first")

    async with _async_session_factory() as session:
        yield session


@asynccontextmanager
async def transaction(db: AsyncSession) -> AsyncGenerator[AsyncSession]:
    """Commit everything done in the block, or roll all of it back."""
    try:
        yield db
        await db.commit()
    except Exception:
        await db.rollback()
        raise


async def get_db_health() -> bool:
    """Readiness probe: can we run a trivial query."""
    if _engine is None:
        return False
    try:
        async with _engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        return False
    return True
