"""Login orchestration.

Ties the login flows, token store, browser sessions and single sign-off
together for the HTTP layer:
1. Login page: redirect decision and provider list
2. Authorization code flow: initiate, then finish on callback
3. Password flow
4. Connection management: disconnect, token refresh, stored user info
5. Logout URL and session-check frame

The service owns the database transaction for writes it makes itself; the
login flows commit their own unit of work.
"""

from dataclasses import dataclass, field
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from oidcauth.auth.auth_state import peek_auth_state
from oidcauth.auth.capabilities import ConnectionMode, require_connection_capability
from oidcauth.auth.events import USER_DISCONNECTED, AuthEvent, EventSink, LoggingEventSink
from oidcauth.auth.jwt import KeySetProvider, parse
from oidcauth.auth.loginflow import (
    AuthorizationCodeFlow,
    FlowContext,
    LoginFlow,
    ResourceOwnerPasswordFlow,
    create_login_flow,
)
from oidcauth.auth.loginflow.base import AuthorizationRedirect, LoginOutcome, userinfo_from_token
from oidcauth.auth.oidc_client import OIDCClient
from oidcauth.auth.redirect import RequestContext, should_redirect
from oidcauth.auth.sessions import BrowserSession
from oidcauth.auth.single_sign_off import build_logout_url, render_session_check
from oidcauth.auth.token_store import TokenStore
from oidcauth.config import LoginFlowConfig
from oidcauth.db.models import OidcToken
from oidcauth.db.session import transaction
from oidcauth.exceptions import ConfigurationError, NotFoundError, StateMismatchError
from oidcauth.logging_config import get_logger
from oidcauth.services.protocols import CapabilityChecker, RoleAssignmentService, UserDirectory

logger = get_logger(__name__)


@dataclass
class Collaborators:
    """Host services the relying party is wired to at startup."""

    users: UserDirectory
    roles: RoleAssignmentService
    capabilities: CapabilityChecker
    events: EventSink = field(default_factory=LoggingEventSink)
    http_client: httpx.AsyncClient | None = None
    key_provider: KeySetProvider | None = None


class LoginService:
    """Request-scoped entry point for every OIDC operation."""

    def __init__(
        self,
        db: AsyncSession,
        collaborators: Collaborators,
        config: LoginFlowConfig,
    ) -> None:
        self.db = db
        self.collaborators = collaborators
        self.config = config

    def _context(self) -> FlowContext:
        return FlowContext(
            db=self.db,
            users=self.collaborators.users,
            roles=self.collaborators.roles,
            events=self.collaborators.events,
            http_client=self.collaborators.http_client,
            key_provider=self.collaborators.key_provider,
        )

    def flow(self, flow_id: str | None = None) -> LoginFlow:
        """Build a login flow, raising when the name is unknown."""
        result = create_login_flow(self.config, self._context(), flow_id)
        if isinstance(result, ConfigurationError):
            raise result
        return result

    def _redirect_flow(self, flow_id: str | None = None) -> AuthorizationCodeFlow:
        flow = self.flow(flow_id)
        if not isinstance(flow, AuthorizationCodeFlow):
            raise ConfigurationError(f"Login flow {flow.flow_id!r} does not use a browser redirect")
        return flow

    # --- Login page ---

    def login_page_redirect(self, request: RequestContext, browser: BrowserSession) -> bool:
        """Whether the login page should go straight to the IdP.

        May flip the browser's opt-out flag; the caller saves the session.
        """
        return should_redirect(request, browser.redirect, self.config)

    def login_page_providers(self, login_url: str, wants_url: str = "") -> list[dict[str, str]]:
        return self.flow().login_page_providers(login_url, wants_url)

    # --- Authorization code flow ---

    async def begin_login(
        self,
        wants_url: str = "",
        force_flow: str | None = None,
    ) -> AuthorizationRedirect:
        """Start a redirect login. ``force_flow`` overrides the configured flow."""
        flow = self._redirect_flow(force_flow)
        return await flow.initiate(wants_url=wants_url, force_flow=force_flow)

    async def finish_login(
        self,
        code: str,
        state: str,
        session_state: str | None = None,
    ) -> LoginOutcome:
        """Handle the IdP callback.

        The flow recorded with the pending state, if any, handles the
        callback in place of the configured one.
        """
        pending = await peek_auth_state(state)
        if pending is None:
            raise StateMismatchError("Callback state does not match a pending login")

        flow = self._redirect_flow(pending.force_flow)
        return await flow.run(code, state, session_state=session_state)

    # --- Password flow ---

    async def password_login(
        self,
        username: str,
        password: str,
        wants_url: str = "",
    ) -> LoginOutcome:
        flow = self.flow()
        if not isinstance(flow, ResourceOwnerPasswordFlow):
            raise ConfigurationError("Password login is not enabled")
        return await flow.run(username, password, wants_url=wants_url)

    # --- Connection management ---

    async def disconnect(self, user_id: str, actor_id: str | None = None) -> None:
        """Remove the OIDC connection of ``user_id``.

        ``actor_id`` is the user asking; defaults to the user themself.

        Raises:
            CapabilityError: the actor may not disconnect.
            NotFoundError: the user has no connection.
        """
        await require_connection_capability(
            self.collaborators.capabilities, actor_id or user_id, ConnectionMode.DISCONNECT
        )

        store = TokenStore(self.db)
        record = await store.get_by_user_id(user_id, for_update=True)
        if record is None:
            raise NotFoundError(f"No OpenID Connect connection for user {user_id!r}")
        username = record.username

        async with transaction(self.db):
            await store.delete_by_user_id(user_id)

        await self.collaborators.events.publish(
            AuthEvent(name=USER_DISCONNECTED, user_id=user_id, username=username)
        )
        logger.info("OIDC connection removed", user_id=user_id, actor_id=actor_id or user_id)

    async def refresh_tokens(self, username: str) -> OidcToken:
        """Exchange the stored refresh token and update the record.

        Raises:
            NotFoundError: no record, or no refresh token stored.
            TokenExchangeError: the IdP refused the refresh.
        """
        store = TokenStore(self.db)
        record = await store.get_by_username(username, for_update=True)
        if record is None or not record.refresh_token:
            raise NotFoundError(f"No refreshable token for {username!r}")

        client = OIDCClient(self.config, http_client=self.collaborators.http_client)
        async with transaction(self.db):
            tokens = await client.refresh(record.refresh_token)
            fields: dict[str, Any] = {
                "access_token": tokens.access_token,
                "expiry": tokens.expiry,
            }
            # Not every IdP rotates these
            if tokens.refresh_token:
                fields["refresh_token"] = tokens.refresh_token
            if tokens.id_token:
                fields["id_token"] = tokens.id_token
            if tokens.scope:
                fields["scope"] = tokens.scope
            record = await store.upsert_by_username(username, **fields)

        logger.info("OIDC tokens refreshed", username=username)
        return record

    async def userinfo(self, username: str) -> dict[str, Any]:
        """Profile fields from the stored identity token."""
        record = await TokenStore(self.db).get_by_username(username)
        if record is None or not record.id_token:
            raise NotFoundError(f"No identity token stored for {username!r}")
        return userinfo_from_token(parse(record.id_token), self.config.username_claim)

    # --- Logout and session check ---

    def logout_url(self, default_post_logout: str) -> str | None:
        """IdP logout URL, or None when single sign-off is off."""
        return build_logout_url(
            self.config, self.config.post_logout_redirect_uri or default_post_logout
        )

    def session_check_html(self, browser: BrowserSession, logout_url: str) -> str | None:
        return render_session_check(self.config, browser.session_state, logout_url)
