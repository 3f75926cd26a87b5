"""Tests for the IdP token endpoint client."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from oidcauth.auth.oidc_client import OIDCClient, require_endpoints
from oidcauth.config import LoginFlowConfig
from oidcauth.exceptions import ConfigurationError, TokenExchangeError


def _client(config: LoginFlowConfig, handler) -> tuple[OIDCClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OIDCClient(config, http_client=http_client), http_client


class TestRequireEndpoints:
    def test_complete(self, oidc_config):
        require_endpoints(oidc_config)

    def test_missing(self):
        with pytest.raises(ConfigurationError, match="client_id"):
            require_endpoints(LoginFlowConfig())


class TestAuthorizationUrl:
    def test_parameters(self, oidc_config):
        url = OIDCClient(oidc_config).build_authorization_url(state="st-1", nonce="n-1")
        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        assert url.startswith("https://idp.example.com/authorize?")
        assert params["client_id"] == "client-123"
        assert params["response_type"] == "code"
        assert params["redirect_uri"] == "https://lms.example.com/auth/oidc/callback"
        assert params["state"] == "st-1"
        assert params["nonce"] == "n-1"
        assert params["resource"] == "https://graph.microsoft.com"
        assert "domain_hint" not in params

    def test_domain_hint(self, oidc_config):
        config = oidc_config.model_copy(update={"domain_hint": "contoso.com"})
        url = OIDCClient(config).build_authorization_url(state="st-1")
        assert "domain_hint=contoso.com" in url


class TestExchangeCode:
    async def test_success(self, oidc_config):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
            return httpx.Response(
                200,
                json={
                    "access_token": "at",
                    "id_token": "a.b.c",
                    "refresh_token": "rt",
                    "expires_in": "3600",
                },
            )

        client, http_client = _client(oidc_config, handler)
        async with http_client:
            tokens = await client.exchange_code("code-1")

        assert seen["grant_type"] == "authorization_code"
        assert seen["code"] == "code-1"
        assert seen["client_secret"] == "s3cret"
        assert seen["resource"] == "https://graph.microsoft.com"
        assert tokens.access_token == "at"
        assert tokens.refresh_token == "rt"
        assert tokens.expires_in == 3600
        assert tokens.expiry is not None

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(400, json={"error": "invalid_grant"}),
            httpx.Response(200, json={"error": "invalid_grant"}),
            httpx.Response(200, text="<html>"),
            httpx.Response(200, json=["not", "an", "object"]),
            httpx.Response(200, json={"access_token": "at"}),
            httpx.Response(200, json={"id_token": "a.b.c"}),
        ],
    )
    async def test_failures(self, oidc_config, response):
        client, http_client = _client(oidc_config, lambda request: response)
        async with http_client:
            with pytest.raises(TokenExchangeError):
                await client.exchange_code("code-1")

    async def test_transport_error(self, oidc_config):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable")

        client, http_client = _client(oidc_config, handler)
        async with http_client:
            with pytest.raises(TokenExchangeError):
                await client.exchange_code("code-1")

    async def test_empty_code(self, oidc_config):
        with pytest.raises(TokenExchangeError):
            await OIDCClient(oidc_config).exchange_code("")


class TestOtherGrants:
    async def test_password(self, oidc_config):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
            return httpx.Response(200, json={"access_token": "at", "id_token": "a.b.c"})

        client, http_client = _client(oidc_config, handler)
        async with http_client:
            await client.exchange_password("alice@example.com", "pw")

        assert seen["grant_type"] == "password"
        assert seen["username"] == "alice@example.com"

    async def test_refresh_without_id_token(self, oidc_config):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"access_token": "at2"})

        client, http_client = _client(oidc_config, handler)
        async with http_client:
            tokens = await client.refresh("rt")

        assert tokens.access_token == "at2"
        assert tokens.id_token == ""

    async def test_refresh_needs_token(self, oidc_config):
        with pytest.raises(TokenExchangeError):
            await OIDCClient(oidc_config).refresh("")
