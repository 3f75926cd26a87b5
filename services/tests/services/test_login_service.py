"""Tests for login orchestration."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from oidcauth.auth.auth_state import AuthState
from oidcauth.auth.capabilities import CAP_DISCONNECT
from oidcauth.auth.events import USER_DISCONNECTED
from oidcauth.auth.redirect import RequestContext
from oidcauth.auth.sessions import BrowserSession
from oidcauth.auth.token_store import TokenStore
from oidcauth.exceptions import (
    CapabilityError,
    ConfigurationError,
    NotFoundError,
    StateMismatchError,
)
from oidcauth.services.login_service import Collaborators, LoginService


@pytest.fixture
def token_responses():
    """Bodies the mocked token endpoint answers with, in order."""
    return []


@pytest.fixture
def service(db, users, roles, capabilities, events, oidc_config, token_responses):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=token_responses.pop(0))

    collaborators = Collaborators(
        users=users,
        roles=roles,
        capabilities=capabilities,
        events=events,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return LoginService(db, collaborators, oidc_config)


class TestLoginPage:
    def test_redirect_decision_updates_session(self, service):
        service.config = service.config.model_copy(update={"force_redirect": True})
        browser = BrowserSession(id="sid")

        assert not service.login_page_redirect(RequestContext("GET", {"oidc": "0"}), browser)
        assert browser.redirect.opt_out

    def test_providers(self, service):
        providers = service.login_page_providers("https://lms/auth/oidc/login")
        assert providers[0]["name"] == "OpenID Connect"


class TestBeginLogin:
    @patch("oidcauth.auth.loginflow.authcode.store_auth_state", new_callable=AsyncMock)
    async def test_returns_redirect(self, mock_store, service):
        redirect = await service.begin_login(wants_url="/course/7")

        assert redirect.url.startswith("https://idp.example.com/authorize?")
        assert mock_store.call_args[0][0].wants_url == "/course/7"

    async def test_password_flow_cannot_redirect(self, service):
        with pytest.raises(ConfigurationError):
            await service.begin_login(force_flow="rocreds")

    async def test_unknown_flow(self, service):
        with pytest.raises(ConfigurationError):
            await service.begin_login(force_flow="saml")


class TestFinishLogin:
    @patch("oidcauth.auth.loginflow.authcode.consume_auth_state", new_callable=AsyncMock)
    @patch("oidcauth.services.login_service.peek_auth_state", new_callable=AsyncMock)
    async def test_completes(
        self, mock_peek, mock_consume, service, token_responses, make_id_token
    ):
        pending = AuthState(state="st-1", wants_url="/my", force_flow="authcode")
        mock_peek.return_value = pending
        mock_consume.return_value = pending
        token_responses.append({"access_token": "at", "id_token": make_id_token()})

        outcome = await service.finish_login("code-1", "st-1", session_state="ss-1")

        assert outcome.user.username == "alice@example.com"
        assert outcome.wants_url == "/my"

    @patch("oidcauth.services.login_service.peek_auth_state", new_callable=AsyncMock)
    async def test_unknown_state(self, mock_peek, service):
        mock_peek.return_value = None
        with pytest.raises(StateMismatchError):
            await service.finish_login("code-1", "forged")


class TestPasswordLogin:
    async def test_disabled_for_authcode(self, service):
        with pytest.raises(ConfigurationError):
            await service.password_login("alice", "pw")

    async def test_login(self, service, token_responses, make_id_token):
        service.config = service.config.model_copy(update={"login_flow": "rocreds"})
        token_responses.append({"access_token": "at", "id_token": make_id_token()})

        outcome = await service.password_login("alice@example.com", "pw")
        assert outcome.user.username == "alice@example.com"


class TestDisconnect:
    async def test_disconnect(self, service, db, capabilities, events):
        await TokenStore(db).upsert_by_username("alice", user_id="1")
        await db.commit()
        capabilities.granted = {(CAP_DISCONNECT, "1")}

        await service.disconnect("1")

        assert await TokenStore(db).get_by_user_id("1") is None
        assert [e.name for e in events.events] == [USER_DISCONNECTED]
        assert events.events[0].username == "alice"

    async def test_requires_capability(self, service, db):
        await TokenStore(db).upsert_by_username("alice", user_id="1")
        await db.commit()

        with pytest.raises(CapabilityError):
            await service.disconnect("1")
        assert await TokenStore(db).get_by_user_id("1") is not None

    async def test_actor_capability_is_checked(self, service, capabilities):
        capabilities.granted = {(CAP_DISCONNECT, "1")}
        with pytest.raises(CapabilityError):
            await service.disconnect("1", actor_id="2")

    async def test_no_connection(self, service, capabilities):
        capabilities.granted = {(CAP_DISCONNECT, "1")}
        with pytest.raises(NotFoundError):
            await service.disconnect("1")


class TestRefreshTokens:
    async def test_refresh(self, service, db, token_responses):
        await TokenStore(db).upsert_by_username(
            "alice", refresh_token="rt1", access_token="at1", id_token="keep.me.please"
        )
        await db.commit()
        token_responses.append({"access_token": "at2", "refresh_token": "rt2", "expires_in": 60})

        record = await service.refresh_tokens("alice")

        assert record.access_token == "at2"
        assert record.refresh_token == "rt2"
        assert record.id_token == "keep.me.please"
        assert record.expiry is not None

    async def test_nothing_to_refresh(self, service, db):
        await TokenStore(db).upsert_by_username("alice")
        await db.commit()

        with pytest.raises(NotFoundError):
            await service.refresh_tokens("alice")


class TestUserinfo:
    async def test_from_stored_token(self, service, db, make_id_token):
        await TokenStore(db).upsert_by_username(
            "alice", id_token=make_id_token(given_name="Alice", family_name="Smith")
        )
        await db.commit()

        info = await service.userinfo("alice")

        assert info["firstname"] == "Alice"
        assert info["email"] == "alice@example.com"

    async def test_unknown_user(self, service):
        with pytest.raises(NotFoundError):
            await service.userinfo("nobody")


class TestLogout:
    def test_single_sign_off_off(self, service):
        assert service.logout_url("https://lms.example.com/") is None

    def test_post_logout_fallback(self, service):
        service.config = service.config.model_copy(
            update={"single_sign_off": True, "logout_uri": ""}
        )
        url = service.logout_url("https://lms.example.com/")
        assert "post_logout_redirect_uri=https%3A%2F%2Flms.example.com%2F" in url

    def test_configured_post_logout(self, service):
        service.config = service.config.model_copy(
            update={
                "single_sign_off": True,
                "logout_uri": "",
                "post_logout_redirect_uri": "https://lms.example.com/bye",
            }
        )
        url = service.logout_url("https://lms.example.com/")
        assert "bye" in url
