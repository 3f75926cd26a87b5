"""Single sign-off.

On logout the browser is sent to the IdP's logout endpoint so the IdP session
ends too. While signed in, a hidden frame polls the IdP session-check endpoint
and logs the browser out as soon as the IdP reports the session changed.
"""

import re
from enum import StrEnum
from pathlib import Path
from urllib.parse import urlencode

from jinja2 import Environment, FileSystemLoader, select_autoescape

from oidcauth.config import LoginFlowConfig
from oidcauth.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_LOGOUT_URL = "https://login.microsoftonline.com/common/oauth2/logout"
POST_LOGOUT_PARAM = "post_logout_redirect_uri"
SESSION_CHECK_INTERVAL_SECONDS = 10

# Logout endpoints of this shape accept the post-logout redirect parameter
_CANONICAL_HOST = re.compile(r"^https://login\.microsoftonline\.com/")
_CANONICAL_PATH = re.compile(r"/oauth2/logout$")

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"

_templates = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html"]),
)


class SessionCheckAction(StrEnum):
    LOGOUT = "logout"
    CONTINUE = "continue"
    IGNORE = "ignore"


def _with_post_logout(url: str, post_logout_redirect_uri: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode({POST_LOGOUT_PARAM: post_logout_redirect_uri})}"


def build_logout_url(config: LoginFlowConfig, post_logout_redirect_uri: str) -> str | None:
    """IdP logout URL, or None when single sign-off is off.

    A configured URL is used verbatim unless it is the canonical IdP logout
    endpoint, which gets the post-logout redirect appended.
    """
    if not config.single_sign_off:
        return None

    logout_uri = config.logout_uri.strip()
    if not logout_uri:
        return _with_post_logout(DEFAULT_LOGOUT_URL, post_logout_redirect_uri)

    if _CANONICAL_HOST.search(logout_uri) and _CANONICAL_PATH.search(logout_uri):
        return _with_post_logout(logout_uri, post_logout_redirect_uri)

    return logout_uri


def session_check_message(client_id: str, session_state: str) -> str:
    """Message posted to the IdP session-check frame."""
    return f"{client_id} {session_state}"


def handle_session_check_response(
    origin: str,
    data: str,
    config: LoginFlowConfig,
) -> SessionCheckAction:
    """What the browser does with a message from the session-check frame.

    Messages from any origin other than the IdP's are ignored.
    """
    if not config.oauth_origin or origin != config.oauth_origin:
        return SessionCheckAction.IGNORE
    if data == "changed":
        return SessionCheckAction.LOGOUT
    # "unchanged" and "error" both keep polling
    return SessionCheckAction.CONTINUE


def render_session_check(
    config: LoginFlowConfig,
    session_state: str | None,
    logout_url: str,
) -> str | None:
    """HTML for the session-check frame, or None when it cannot run."""
    if not config.session_check_endpoint or not config.oauth_origin:
        return None
    if not session_state:
        logger.debug("No IdP session_state for this browser, skipping session check")
        return None

    template = _templates.get_template("session_check.html")
    return template.render(
        session_check_endpoint=config.session_check_endpoint,
        oauth_origin=config.oauth_origin,
        message=session_check_message(config.client_id, session_state),
        logout_url=logout_url,
        interval_seconds=SESSION_CHECK_INTERVAL_SECONDS,
    )
