"""Login flow base abstraction.

A login attempt moves through a fixed set of states. Flow variants share
token validation, user resolution and login completion; they differ in how
they obtain tokens from the IdP.

    START -> AWAITING_IDP_REDIRECT -> AWAITING_CALLBACK -> EXCHANGING_CODE
          -> VALIDATING_TOKEN -> RESOLVING_USER -> AUTHENTICATED

Any step may end in FAILED instead.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from oidcauth.auth import restrictions
from oidcauth.auth.claims_mapper import RoleDiff, sync_roles
from oidcauth.auth.events import USER_LOGGED_IN, AuthEvent, EventSink, LoggingEventSink
from oidcauth.auth.jwt import IdToken, KeySetProvider, parse, validate_claims, verify_signature
from oidcauth.auth.oidc_client import OIDCClient, TokenResponse
from oidcauth.auth.token_store import TokenStore
from oidcauth.config import LoginFlowConfig, ProvisioningPolicy
from oidcauth.db.session import transaction
from oidcauth.exceptions import (
    ConflictError,
    InvalidTokenError,
    LoginStateError,
    OIDCAuthError,
    RestrictedUserError,
)
from oidcauth.logging_config import get_logger
from oidcauth.services.protocols import LocalUser, Role, RoleAssignmentService, UserDirectory

logger = get_logger(__name__)

# Component name recorded on role assignments made by this package
COMPONENT = "auth_oidc"


class LoginState(StrEnum):
    START = "start"
    AWAITING_IDP_REDIRECT = "awaiting_idp_redirect"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING_CODE = "exchanging_code"
    VALIDATING_TOKEN = "validating_token"
    RESOLVING_USER = "resolving_user"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


_TRANSITIONS: dict[LoginState, frozenset[LoginState]] = {
    # The password flow skips the browser redirect entirely
    LoginState.START: frozenset({LoginState.AWAITING_IDP_REDIRECT, LoginState.EXCHANGING_CODE}),
    LoginState.AWAITING_IDP_REDIRECT: frozenset({LoginState.AWAITING_CALLBACK}),
    LoginState.AWAITING_CALLBACK: frozenset({LoginState.EXCHANGING_CODE}),
    LoginState.EXCHANGING_CODE: frozenset({LoginState.VALIDATING_TOKEN}),
    LoginState.VALIDATING_TOKEN: frozenset({LoginState.RESOLVING_USER}),
    LoginState.RESOLVING_USER: frozenset({LoginState.AUTHENTICATED}),
    LoginState.AUTHENTICATED: frozenset(),
    LoginState.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({LoginState.AUTHENTICATED, LoginState.FAILED})


@dataclass
class LoginAttempt:
    """Tracks where one login attempt is in the state machine."""

    state: LoginState = LoginState.START
    history: list[LoginState] = field(default_factory=list)
    error: Exception | None = None

    def advance(self, target: LoginState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise LoginStateError(f"Illegal login transition {self.state} -> {target}")
        self.history.append(self.state)
        self.state = target

    def fail(self, error: Exception) -> None:
        if self.state in TERMINAL_STATES:
            return
        self.history.append(self.state)
        self.state = LoginState.FAILED
        self.error = error

    @contextmanager
    def step(self, target: LoginState) -> Iterator[None]:
        """Enter ``target``; any exception raised in the block fails the attempt."""
        self.advance(target)
        try:
            yield
        except Exception as e:
            self.fail(e)
            raise


@dataclass(frozen=True)
class AuthorizationRedirect:
    """Where to send the browser to sign in at the IdP."""

    url: str
    state: str
    nonce: str | None = None


@dataclass
class ResolvedIdentity:
    """A validated identity token matched to a local account (or to none yet)."""

    id_token: IdToken
    tokens: TokenResponse
    subject: str
    oidc_username: str
    username: str
    # None when the account will be provisioned by complete_login
    user: LocalUser | None = None


@dataclass
class LoginOutcome:
    """Result of a completed login, handed to session establishment."""

    user: LocalUser
    roles: RoleDiff
    provisioned: bool = False
    wants_url: str = ""
    session_state: str | None = None


@dataclass
class FlowContext:
    """Request-scoped collaborators shared by every flow variant."""

    db: AsyncSession
    users: UserDirectory
    roles: RoleAssignmentService
    events: EventSink = field(default_factory=LoggingEventSink)
    http_client: httpx.AsyncClient | None = None
    key_provider: KeySetProvider | None = None


def userinfo_from_token(id_token: IdToken, username_claim: str = "upn") -> dict[str, Any]:
    """Map standard claims onto local profile fields."""
    username = id_token.claim(username_claim) or id_token.claim("preferred_username")
    email = id_token.claim("email")
    if not email and isinstance(username, str) and "@" in username:
        email = username
    profile: dict[str, Any] = {
        "firstname": id_token.claim("given_name") or "",
        "lastname": id_token.claim("family_name") or "",
        "email": email or "",
        "idnumber": id_token.subject or "",
    }
    if not profile["firstname"] and not profile["lastname"] and id_token.claim("name"):
        profile["firstname"] = id_token.claim("name")
    return profile


class LoginFlow(ABC):
    """Base class for login flow variants."""

    flow_id: ClassVar[str]
    # Whether the flow sends the browser to the IdP and receives a callback
    uses_redirect: ClassVar[bool] = False

    def __init__(self, config: LoginFlowConfig, context: FlowContext) -> None:
        self.config = config
        self.context = context
        self.attempt = LoginAttempt()
        self.client = OIDCClient(config, http_client=context.http_client)

    def login_page_providers(self, login_url: str, wants_url: str = "") -> list[dict[str, str]]:
        """Entries for the host login page. Empty when the flow has none."""
        return []

    @abstractmethod
    async def run(self, *args: Any, **kwargs: Any) -> LoginOutcome:
        """Authenticate end to end and return the completed login."""

    # --- Token validation and user resolution ---

    async def validate_and_resolve_user(
        self,
        tokens: TokenResponse,
        nonce: str | None = None,
    ) -> ResolvedIdentity:
        """Validate the identity token and find the matching local account.

        ``nonce`` is the value sent with the authorization request; the
        token must echo it.

        Has no side effects; account provisioning is deferred to
        complete_login.
        """
        with self.attempt.step(LoginState.VALIDATING_TOKEN):
            id_token = await self._validate_id_token(tokens.id_token, nonce)

        with self.attempt.step(LoginState.RESOLVING_USER):
            subject = id_token.subject
            if not subject:
                raise InvalidTokenError("Token has no 'sub' claim")

            oidc_username = self._username_from_token(id_token)
            restrictions.enforce(oidc_username, self.config.user_restrictions)

            user = await self._find_linked_user(subject, oidc_username)
            if user is None:
                user = await self._apply_provisioning_policy(oidc_username)
            if user is not None and user.suspended:
                raise RestrictedUserError(f"User {user.username!r} is suspended")

            username = user.username if user is not None else oidc_username
            logger.info(
                "OIDC identity resolved",
                flow=self.flow_id,
                subject=subject,
                username=username,
                linked=user is not None,
            )
            return ResolvedIdentity(
                id_token=id_token,
                tokens=tokens,
                subject=subject,
                oidc_username=oidc_username,
                username=username,
                user=user,
            )

    async def _validate_id_token(self, raw: str, nonce: str | None = None) -> IdToken:
        try:
            id_token = parse(raw)
            validate_claims(
                id_token,
                client_id=self.config.client_id,
                issuer=self.config.issuer,
                leeway=self.config.clock_skew_seconds,
                nonce=nonce,
            )
            if self.config.verify_signature:
                provider = self.context.key_provider or KeySetProvider(
                    self.config.jwks_uri, http_client=self.context.http_client
                )
                verify_signature(id_token, await provider.get_keys())
        except OIDCAuthError as e:
            self._log_token_failure(raw, e)
            raise
        return id_token

    def _log_token_failure(self, raw: str, error: OIDCAuthError) -> None:
        diagnostics: dict[str, Any] = {"error": str(error), "error_type": type(error).__name__}
        try:
            claims = parse(raw).claims
        except OIDCAuthError:
            claims = None
        if claims is not None:
            diagnostics["claim_names"] = sorted(claims)
            if self.config.debug:
                diagnostics["claims"] = claims
        logger.warning("Identity token rejected", flow=self.flow_id, **diagnostics)

    def _username_from_token(self, id_token: IdToken) -> str:
        username = id_token.claim(self.config.username_claim)
        if not isinstance(username, str) or not username:
            username = id_token.subject or ""
        return username

    async def _find_linked_user(self, subject: str, oidc_username: str) -> LocalUser | None:
        store = TokenStore(self.context.db)
        record = await store.get_by_subject(subject)
        if record is None:
            record = await store.get_by_username(oidc_username)
        if record is None:
            return None

        if record.user_id:
            user = await self.context.users.get_by_id(record.user_id)
            if user is not None:
                return user
        # Token stored before the account was resolved, or the account was removed
        return await self.context.users.get_by_username(record.username)

    async def _apply_provisioning_policy(self, username: str) -> LocalUser | None:
        policy = self.config.provisioning
        existing = await self.context.users.get_by_username(username)

        if policy == ProvisioningPolicy.DENY:
            raise RestrictedUserError(f"No linked account for {username!r} and provisioning is off")

        if policy == ProvisioningPolicy.MATCH:
            if existing is None:
                raise RestrictedUserError(f"No local account matches {username!r}")
            return existing

        # CREATE: reuse an account this component already owns, never take over others
        if existing is not None:
            if existing.auth != "oidc":
                raise ConflictError(
                    f"Local account {username!r} uses {existing.auth!r} authentication"
                )
            return existing
        return None

    # --- Completion ---

    async def complete_login(
        self,
        identity: ResolvedIdentity,
        wants_url: str = "",
        session_state: str | None = None,
    ) -> LoginOutcome:
        """Persist tokens, link the account, sync roles and emit the login event.

        All database writes land in one commit. The role diff is computed
        before any write and applied only after the token record is in place;
        a failure anywhere rolls the token writes back. The role service is
        not part of that transaction, so role changes already made are undone
        by hand when a later one fails.
        """
        if self.attempt.state != LoginState.RESOLVING_USER:
            raise LoginStateError(f"Cannot complete login from state {self.attempt.state}")

        roles = self.context.roles
        try:
            async with transaction(self.context.db):
                user = identity.user
                provisioned = False
                if user is None:
                    user = await self.context.users.create(
                        identity.username,
                        userinfo_from_token(identity.id_token, self.config.username_claim),
                    )
                    provisioned = True
                    logger.info(
                        "Provisioned local account", username=user.username, user_id=user.id
                    )

                local_roles = await roles.list_roles()
                assigned = await roles.list_assigned_by_component(user.id, COMPONENT)
                diff = sync_roles(
                    identity.id_token, local_roles, self.config.role_claim_name, assigned
                )

                await self._store_tokens(user, identity)
                await self._apply_role_diff(user, diff)
        except Exception as e:
            self.attempt.fail(e)
            raise

        self.attempt.advance(LoginState.AUTHENTICATED)
        await self.context.events.publish(
            AuthEvent(name=USER_LOGGED_IN, user_id=user.id, username=user.username)
        )
        logger.info(
            "OIDC login complete",
            flow=self.flow_id,
            user_id=user.id,
            username=user.username,
            assigned=[r.shortname for r in diff.assign],
            unassigned=[r.shortname for r in diff.unassign],
        )
        return LoginOutcome(
            user=user,
            roles=diff,
            provisioned=provisioned,
            wants_url=wants_url,
            session_state=session_state,
        )

    async def _apply_role_diff(self, user: LocalUser, diff: RoleDiff) -> None:
        roles = self.context.roles
        assigned: list[Role] = []
        unassigned: list[Role] = []
        try:
            for role in diff.assign:
                await roles.assign(role, user.id, COMPONENT)
                assigned.append(role)
            for role in diff.unassign:
                await roles.unassign(role, user.id, COMPONENT)
                unassigned.append(role)
        except Exception:
            for role in assigned:
                await roles.unassign(role, user.id, COMPONENT)
            for role in unassigned:
                await roles.assign(role, user.id, COMPONENT)
            logger.warning(
                "Role sync failed, reverted partial changes",
                user_id=user.id,
                reverted=[r.shortname for r in assigned + unassigned],
            )
            raise

    async def _store_tokens(self, user: LocalUser, identity: ResolvedIdentity) -> None:
        store = TokenStore(self.context.db)

        # Local username changed since the last login: move the record along
        linked = await store.get_by_user_id(user.id, for_update=True)
        if linked is not None and linked.username != user.username:
            await store.rename_username(linked.username, user.username)

        tokens = identity.tokens
        await store.upsert_by_username(
            user.username,
            oidc_unique_id=identity.subject,
            oidc_username=identity.oidc_username,
            id_token=tokens.id_token,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expiry=tokens.expiry,
            scope=tokens.scope or self.config.scope,
            resource=tokens.resource or self.config.resource,
        )
        await store.link_user_id(user.username, user.id)
