"""Authorization code flow.

The browser is redirected to the IdP with an anti-forgery state, the IdP
redirects back with a code, and the code is exchanged server-to-server for
tokens.
"""

from urllib.parse import urlencode

from oidcauth.auth.auth_state import (
    AuthState,
    consume_auth_state,
    generate_nonce,
    generate_state,
    store_auth_state,
)
from oidcauth.auth.loginflow.base import (
    AuthorizationRedirect,
    FlowContext,
    LoginFlow,
    LoginOutcome,
    LoginState,
)
from oidcauth.auth.oidc_client import TokenResponse, require_endpoints
from oidcauth.config import LoginFlowConfig
from oidcauth.exceptions import StateMismatchError
from oidcauth.logging_config import get_logger

logger = get_logger(__name__)


class AuthorizationCodeFlow(LoginFlow):
    """OIDC authorization code grant."""

    flow_id = "authcode"
    uses_redirect = True

    def __init__(self, config: LoginFlowConfig, context: FlowContext) -> None:
        super().__init__(config, context)
        # Consumed anti-forgery state, set by handle_callback
        self.auth_state: AuthState | None = None

    def login_page_providers(self, login_url: str, wants_url: str = "") -> list[dict[str, str]]:
        query = urlencode({"wants_url": wants_url}) if wants_url else ""
        url = f"{login_url}?{query}" if query else login_url
        return [{"url": url, "name": self.config.op_name}]

    async def initiate(
        self,
        wants_url: str = "",
        force_flow: str | None = None,
    ) -> AuthorizationRedirect:
        """Build the authorization request and persist the anti-forgery state.

        Raises:
            ConfigurationError: client id or an endpoint is not configured.
        """
        with self.attempt.step(LoginState.AWAITING_IDP_REDIRECT):
            require_endpoints(self.config)

            state = generate_state()
            nonce = generate_nonce()
            url = self.client.build_authorization_url(state=state, nonce=nonce)
            await store_auth_state(
                AuthState(state=state, wants_url=wants_url, nonce=nonce, force_flow=force_flow)
            )

        self.attempt.advance(LoginState.AWAITING_CALLBACK)
        logger.info("Redirecting to IdP", flow=self.flow_id, force_flow=force_flow)
        return AuthorizationRedirect(url=url, state=state, nonce=nonce)

    async def handle_callback(self, code: str, state: str) -> TokenResponse:
        """Verify the anti-forgery state and exchange the code for tokens.

        Raises:
            StateMismatchError: state unknown, expired or already used.
            TokenExchangeError: the token endpoint failed.
        """
        # The callback arrives in a new request; resume where the redirect left off
        if self.attempt.state == LoginState.START:
            self.attempt.advance(LoginState.AWAITING_IDP_REDIRECT)
            self.attempt.advance(LoginState.AWAITING_CALLBACK)

        with self.attempt.step(LoginState.EXCHANGING_CODE):
            auth_state = await consume_auth_state(state)
            if auth_state is None or auth_state.state != state:
                raise StateMismatchError("Callback state does not match a pending login")
            self.auth_state = auth_state
            return await self.client.exchange_code(code)

    async def run(self, code: str, state: str, session_state: str | None = None) -> LoginOutcome:
        """Drive a callback through exchange, validation, resolution and completion."""
        tokens = await self.handle_callback(code, state)
        pending = self.auth_state
        identity = await self.validate_and_resolve_user(
            tokens, nonce=pending.nonce if pending else None
        )
        wants_url = pending.wants_url if pending else ""
        return await self.complete_login(identity, wants_url=wants_url, session_state=session_state)
