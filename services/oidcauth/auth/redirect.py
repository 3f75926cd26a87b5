"""Login-page redirect decision.

Decides whether a request for the host login page should go straight to the
IdP. Everything the decision depends on is passed in; the only state it
touches is the SessionRedirectState it is given.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field

from oidcauth.config import LoginFlowConfig

# Query parameter that opts out of (0) or back into (1) the forced redirect
OPT_OUT_PARAM = "oidc"
# Opt-out parameter shared with other authentication plugins
NO_REDIRECT_PARAM = "noredirect"

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", ""})


@dataclass(frozen=True)
class RequestContext:
    """The parts of an HTTP request the redirect decision looks at."""

    method: str
    query: Mapping[str, str] = field(default_factory=dict)


@dataclass
class SessionRedirectState:
    """Per-browser-session redirect preference."""

    opt_out: bool = False


def _param_bool(value: str | None) -> bool | None:
    if value is None:
        return None
    value = value.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return None


def should_redirect(
    request: RequestContext,
    session_state: SessionRedirectState,
    config: LoginFlowConfig,
) -> bool:
    """Whether to send this login-page request to the IdP.

    - Never when forced redirect is off.
    - Never on POST, so in-flight form submissions are not lost.
    - ``oidc=1`` clears an earlier opt-out.
    - A session that opted out stays opted out.
    - ``oidc=0`` or ``noredirect=1`` opts the session out.
    """
    if not config.force_redirect:
        return False

    if request.method.upper() == "POST":
        return False

    oidc = _param_bool(request.query.get(OPT_OUT_PARAM))
    if _param_bool(request.query.get(NO_REDIRECT_PARAM)):
        oidc = False

    if oidc is True:
        session_state.opt_out = False

    if session_state.opt_out:
        return False

    if oidc is False:
        session_state.opt_out = True
        return False

    session_state.opt_out = False
    return True
