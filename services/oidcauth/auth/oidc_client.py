"""HTTP client for the IdP authorization and token endpoints.

Uses httpx for the server-to-server token calls. Every failure talking to the
token endpoint surfaces as TokenExchangeError; nothing here retries.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx

from oidcauth.config import LoginFlowConfig
from oidcauth.db.models import utc_now
from oidcauth.exceptions import ConfigurationError, TokenExchangeError
from oidcauth.logging_config import get_logger

logger = get_logger(__name__)

TOKEN_REQUEST_TIMEOUT = 15.0


@dataclass
class TokenResponse:
    """Tokens returned by the IdP token endpoint."""

    access_token: str
    id_token: str
    refresh_token: str = ""
    expires_in: int | None = None
    scope: str = ""
    resource: str = ""
    received_at: datetime = field(default_factory=utc_now)

    @property
    def expiry(self) -> datetime | None:
        if self.expires_in is None:
            return None
        return self.received_at + timedelta(seconds=self.expires_in)


def require_endpoints(config: LoginFlowConfig) -> None:
    """Raise ConfigurationError when the settings cannot drive a login."""
    missing = [
        name
        for name in ("client_id", "auth_endpoint", "token_endpoint", "redirect_uri")
        if not getattr(config, name)
    ]
    if missing:
        raise ConfigurationError(f"OpenID Connect settings missing: {', '.join(missing)}")


class OIDCClient:
    """Talks to one IdP on behalf of the relying party."""

    def __init__(
        self,
        config: LoginFlowConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._http_client = http_client

    def build_authorization_url(
        self,
        state: str,
        nonce: str | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> str:
        """Build the URL the browser is redirected to for sign-in."""
        require_endpoints(self._config)

        params: dict[str, str] = {
            "client_id": self._config.client_id,
            "response_type": "code",
            "redirect_uri": self._config.redirect_uri,
            "scope": self._config.scope,
            "state": state,
        }
        if self._config.resource:
            params["resource"] = self._config.resource
        if nonce:
            params["nonce"] = nonce
        if self._config.domain_hint:
            params["domain_hint"] = self._config.domain_hint
        if extra_params:
            params.update(extra_params)

        separator = "&" if "?" in self._config.auth_endpoint else "?"
        return f"{self._config.auth_endpoint}{separator}{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenResponse:
        """Exchange an authorization code for tokens."""
        if not code:
            raise TokenExchangeError("No authorization code in callback")
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._config.redirect_uri,
        }
        return await self._request_tokens(data, require_id_token=True)

    async def exchange_password(self, username: str, password: str) -> TokenResponse:
        """Resource-owner password credentials grant."""
        data = {
            "grant_type": "password",
            "username": username,
            "password": password,
            "scope": self._config.scope,
        }
        return await self._request_tokens(data, require_id_token=True)

    async def refresh(self, refresh_token: str) -> TokenResponse:
        """Exchange a refresh token. The IdP may omit a new id_token."""
        if not refresh_token:
            raise TokenExchangeError("No refresh token stored")
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        return await self._request_tokens(data, require_id_token=False)

    async def _request_tokens(self, data: dict[str, str], require_id_token: bool) -> TokenResponse:
        if not self._config.token_endpoint or not self._config.client_id:
            raise ConfigurationError("OpenID Connect token endpoint or client id missing")

        form = {
            **data,
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
        }
        if self._config.resource:
            form["resource"] = self._config.resource

        try:
            resp = await self._post(form)
        except httpx.HTTPError as e:
            logger.error(
                "Token endpoint request failed",
                grant_type=data["grant_type"],
                error=str(e),
            )
            raise TokenExchangeError(f"Token endpoint request failed: {e}") from e

        if not resp.is_success:
            logger.error(
                "Token endpoint returned an error",
                grant_type=data["grant_type"],
                status_code=resp.status_code,
                body=resp.text[:500],
            )
            raise TokenExchangeError(f"Token endpoint returned HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as e:
            raise TokenExchangeError("Token endpoint returned a non-JSON body") from e

        return _parse_token_body(body, require_id_token)

    async def _post(self, form: dict[str, str]) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(self._config.token_endpoint, data=form)
        async with httpx.AsyncClient(timeout=TOKEN_REQUEST_TIMEOUT) as client:
            return await client.post(self._config.token_endpoint, data=form)


def _parse_token_body(body: Any, require_id_token: bool) -> TokenResponse:
    if not isinstance(body, dict):
        raise TokenExchangeError("Token endpoint response is not a JSON object")
    if "error" in body:
        raise TokenExchangeError(
            f"Token endpoint error: {body.get('error')} {body.get('error_description', '')}".strip()
        )

    access_token = body.get("access_token")
    id_token = body.get("id_token") or ""
    if not isinstance(access_token, str) or not access_token:
        raise TokenExchangeError("Token endpoint response has no access_token")
    if require_id_token and (not isinstance(id_token, str) or not id_token):
        raise TokenExchangeError("Token endpoint response has no id_token")

    expires_in = body.get("expires_in")
    try:
        expires_in = int(expires_in) if expires_in is not None else None
    except (TypeError, ValueError):
        logger.warning("Ignoring unparseable expires_in", expires_in=expires_in)
        expires_in = None

    return TokenResponse(
        access_token=access_token,
        id_token=id_token if isinstance(id_token, str) else "",
        refresh_token=body.get("refresh_token") or "",
        expires_in=expires_in,
        scope=body.get("scope") or "",
        resource=body.get("resource") or "",
    )
