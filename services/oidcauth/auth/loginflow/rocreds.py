"""Resource-owner password credentials flow.

The host login form posts the username and password, which are sent straight
to the token endpoint. No browser redirect and no anti-forgery state.
"""

from oidcauth.auth.loginflow.base import LoginFlow, LoginOutcome, LoginState
from oidcauth.auth.oidc_client import TokenResponse
from oidcauth.exceptions import ConfigurationError
from oidcauth.logging_config import get_logger

logger = get_logger(__name__)


class ResourceOwnerPasswordFlow(LoginFlow):
    """OAuth2 password grant against the IdP token endpoint."""

    flow_id = "rocreds"

    def qualify_username(self, username: str) -> str:
        """Append the configured suffix to a bare username."""
        username = username.strip()
        if self.config.auto_append and "@" not in username:
            return username + self.config.auto_append
        return username

    async def exchange_credentials(self, username: str, password: str) -> TokenResponse:
        with self.attempt.step(LoginState.EXCHANGING_CODE):
            if not self.config.token_endpoint or not self.config.client_id:
                raise ConfigurationError("OpenID Connect token endpoint or client id missing")
            return await self.client.exchange_password(self.qualify_username(username), password)

    async def run(self, username: str, password: str, wants_url: str = "") -> LoginOutcome:
        """Authenticate with credentials and complete the login."""
        tokens = await self.exchange_credentials(username, password)
        identity = await self.validate_and_resolve_user(tokens)
        logger.debug("Password login resolved", username=identity.username)
        return await self.complete_login(identity, wants_url=wants_url)
