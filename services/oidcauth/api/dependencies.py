"""FastAPI dependencies for the OIDC routes.

Host services are wired onto ``app.state.collaborators`` when the application
is created. Browser sessions are keyed by an opaque cookie.
"""

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from oidcauth.auth.sessions import BrowserSession, load_browser_session
from oidcauth.config import settings
from oidcauth.db.session import get_db
from oidcauth.logging_config import get_logger
from oidcauth.services.login_service import Collaborators, LoginService

logger = get_logger(__name__)


def get_collaborators(request: Request) -> Collaborators:
    collaborators: Collaborators | None = getattr(request.app.state, "collaborators", None)
    if collaborators is None:
        logger.error("No host collaborators wired onto the application")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="OpenID Connect is not configured correctly",
        )
    return collaborators


async def get_login_service(
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> LoginService:
    return LoginService(db, collaborators, settings.oidc)


async def get_browser_session(request: Request) -> BrowserSession:
    """Current browser session, or a fresh one not yet saved."""
    return await load_browser_session(request.cookies.get(settings.session_cookie_name))
