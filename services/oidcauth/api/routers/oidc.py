"""OpenID Connect router.

Browser-facing endpoints of the relying party:
    GET    /auth/oidc/providers            login page hook: forced redirect or provider list
    GET    /auth/oidc/login                start the authorization code flow
    GET    /auth/oidc/callback             IdP redirect back (query response mode)
    POST   /auth/oidc/callback             IdP redirect back (form_post response mode)
    POST   /auth/oidc/login/password       resource-owner password login
    GET    /auth/oidc/logout               end the local session, then single sign-off
    GET    /auth/oidc/session-check        session-check frame for signed-in browsers
    DELETE /auth/oidc/connection/{user_id} remove a user's OIDC connection
"""

from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request, Response, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from pydantic import BaseModel

from oidcauth.api.dependencies import get_browser_session, get_login_service
from oidcauth.auth.loginflow.base import LoginOutcome
from oidcauth.auth.redirect import RequestContext
from oidcauth.auth.sessions import (
    BrowserSession,
    delete_browser_session,
    generate_session_id,
    save_browser_session,
)
from oidcauth.config import settings
from oidcauth.exceptions import OIDCAuthError
from oidcauth.logging_config import get_logger
from oidcauth.services.login_service import LoginService

router = APIRouter(tags=["oidc"])
logger = get_logger(__name__)


# --- Pydantic models ---


class ProviderInfo(BaseModel):
    url: str
    name: str


class ProvidersResponse(BaseModel):
    providers: list[ProviderInfo]


class PasswordLoginRequest(BaseModel):
    username: str
    password: str
    wants_url: str = ""


class LoginResponse(BaseModel):
    user_id: str
    username: str
    provisioned: bool
    roles_assigned: list[str]
    roles_unassigned: list[str]
    redirect_to: str


# --- Helpers ---


def _http_error(e: OIDCAuthError) -> HTTPException:
    logger.warning("OIDC request failed", error=str(e), error_type=type(e).__name__)
    return HTTPException(status_code=e.status_code, detail=e.public_message)


def _route_url(path: str) -> str:
    return f"{settings.base_url.rstrip('/')}{settings.api_prefix}{path}"


def _safe_wants_url(wants_url: str) -> str:
    """Only local destinations; anything else falls back to the site root."""
    base = settings.base_url.rstrip("/")
    if wants_url.startswith("/") and not wants_url.startswith("//"):
        return base + wants_url
    if wants_url == base or wants_url.startswith(base + "/"):
        return wants_url
    return base + "/"


def _set_session_cookie(response: Response, browser: BrowserSession) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        browser.id,
        max_age=settings.session_ttl_hours * 3600,
        httponly=True,
        samesite="lax",
        secure=settings.base_url.startswith("https://"),
    )


async def _establish_session(browser: BrowserSession, outcome: LoginOutcome) -> None:
    # New id at sign-in; the pre-login id may have been planted
    if browser.id:
        await delete_browser_session(browser.id)
    browser.id = generate_session_id()
    browser.user_id = outcome.user.id
    browser.username = outcome.user.username
    browser.session_state = outcome.session_state
    await save_browser_session(browser)


# --- Login page ---


@router.get("/providers", response_model=ProvidersResponse)
async def login_page(
    request: Request,
    wants_url: str = Query("", description="Where to go after signing in"),
    service: LoginService = Depends(get_login_service),
    browser: BrowserSession = Depends(get_browser_session),
) -> Response:
    """Login page hook.

    Redirects straight to the IdP when forced redirect applies to this
    browser, otherwise lists the providers to show on the login page.
    """
    context = RequestContext(method=request.method, query=dict(request.query_params))
    redirect = service.login_page_redirect(context, browser)

    try:
        if redirect:
            query = urlencode({"wants_url": wants_url}) if wants_url else ""
            url = _route_url("/login") + (f"?{query}" if query else "")
            response: Response = RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)
        else:
            providers = service.login_page_providers(_route_url("/login"), wants_url)
            response = JSONResponse(
                ProvidersResponse(providers=[ProviderInfo(**p) for p in providers]).model_dump()
            )
    except OIDCAuthError as e:
        raise _http_error(e) from e

    # The opt-out flag may have changed
    await save_browser_session(browser)
    _set_session_cookie(response, browser)
    return response


# --- Authorization code flow ---


@router.get("/login")
async def login(
    wants_url: str = Query(""),
    force_flow: str | None = Query(None, description="Login flow overriding the configured one"),
    service: LoginService = Depends(get_login_service),
) -> RedirectResponse:
    """Send the browser to the IdP authorization endpoint."""
    try:
        redirect = await service.begin_login(wants_url=wants_url, force_flow=force_flow)
    except OIDCAuthError as e:
        raise _http_error(e) from e
    return RedirectResponse(url=redirect.url, status_code=status.HTTP_302_FOUND)


async def _complete_callback(
    service: LoginService,
    browser: BrowserSession,
    code: str | None,
    state: str | None,
    session_state: str | None,
    error: str | None,
    error_description: str | None,
) -> RedirectResponse:
    if error:
        logger.warning("IdP returned an error", error=error, error_description=error_description)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication failed")
    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing code or state parameter",
        )

    try:
        outcome = await service.finish_login(code, state, session_state=session_state)
    except OIDCAuthError as e:
        raise _http_error(e) from e

    await _establish_session(browser, outcome)
    response = RedirectResponse(
        url=_safe_wants_url(outcome.wants_url), status_code=status.HTTP_302_FOUND
    )
    _set_session_cookie(response, browser)
    return response


@router.get("/callback")
async def callback(
    code: str | None = Query(None),
    state: str | None = Query(None),
    session_state: str | None = Query(None),
    error: str | None = Query(None),
    error_description: str | None = Query(None),
    service: LoginService = Depends(get_login_service),
    browser: BrowserSession = Depends(get_browser_session),
) -> RedirectResponse:
    """IdP callback, query response mode."""
    return await _complete_callback(
        service, browser, code, state, session_state, error, error_description
    )


@router.post("/callback")
async def callback_form_post(
    code: str | None = Form(None),
    state: str | None = Form(None),
    session_state: str | None = Form(None),
    error: str | None = Form(None),
    error_description: str | None = Form(None),
    service: LoginService = Depends(get_login_service),
    browser: BrowserSession = Depends(get_browser_session),
) -> RedirectResponse:
    """IdP callback, form_post response mode."""
    return await _complete_callback(
        service, browser, code, state, session_state, error, error_description
    )


# --- Password flow ---


@router.post("/login/password", response_model=LoginResponse)
async def password_login(
    body: PasswordLoginRequest,
    service: LoginService = Depends(get_login_service),
    browser: BrowserSession = Depends(get_browser_session),
) -> JSONResponse:
    """Authenticate with username and password against the IdP token endpoint."""
    try:
        outcome = await service.password_login(body.username, body.password, body.wants_url)
    except OIDCAuthError as e:
        raise _http_error(e) from e

    await _establish_session(browser, outcome)
    response = JSONResponse(
        LoginResponse(
            user_id=outcome.user.id,
            username=outcome.user.username,
            provisioned=outcome.provisioned,
            roles_assigned=[r.shortname for r in outcome.roles.assign],
            roles_unassigned=[r.shortname for r in outcome.roles.unassign],
            redirect_to=_safe_wants_url(outcome.wants_url),
        ).model_dump()
    )
    _set_session_cookie(response, browser)
    return response


# --- Logout and session check ---


@router.get("/logout")
async def logout(
    service: LoginService = Depends(get_login_service),
    browser: BrowserSession = Depends(get_browser_session),
) -> Response:
    """End the local session, then hand over to the IdP logout when configured."""
    await delete_browser_session(browser.id)
    logger.info("Logout", user_id=browser.user_id)

    logout_url = service.logout_url(settings.base_url)
    if logout_url:
        response: Response = RedirectResponse(url=logout_url, status_code=status.HTTP_302_FOUND)
    else:
        response = JSONResponse({"status": "logged_out"})
    response.delete_cookie(settings.session_cookie_name)
    return response


@router.get("/session-check")
async def session_check(
    service: LoginService = Depends(get_login_service),
    browser: BrowserSession = Depends(get_browser_session),
) -> Response:
    """Session-check frame, or 204 when there is nothing to check."""
    if browser.user_id is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    html = service.session_check_html(browser, _route_url("/logout"))
    if html is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return HTMLResponse(html)


# --- Connection management ---


@router.delete("/connection/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect(
    user_id: str,
    service: LoginService = Depends(get_login_service),
    browser: BrowserSession = Depends(get_browser_session),
) -> Response:
    """Remove a user's OIDC connection. The signed-in user is the actor."""
    if browser.user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not signed in")
    try:
        await service.disconnect(user_id, actor_id=browser.user_id)
    except OIDCAuthError as e:
        raise _http_error(e) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)
