"""Tests for Redis-backed browser sessions."""

import json
from unittest.mock import AsyncMock, patch

from oidcauth.auth.redirect import SessionRedirectState
from oidcauth.auth.sessions import (
    BROWSER_SESSION_PREFIX,
    BrowserSession,
    delete_browser_session,
    load_browser_session,
    save_browser_session,
)


class TestBrowserSessionSerialization:
    def test_round_trip(self):
        session = BrowserSession(
            redirect=SessionRedirectState(opt_out=True),
            session_state="ss-1",
            user_id="42",
            username="alice",
            id="sid",
        )
        restored = BrowserSession.from_json("sid", session.to_json())

        assert restored.redirect.opt_out is True
        assert restored.session_state == "ss-1"
        assert restored.user_id == "42"
        assert restored.id == "sid"

    def test_id_not_serialized(self):
        data = json.loads(BrowserSession(id="sid").to_json())
        assert "id" not in data


class TestLoadBrowserSession:
    @patch("oidcauth.auth.sessions.get_redis_client")
    async def test_existing(self, mock_get_redis):
        redis = AsyncMock()
        redis.get.return_value = BrowserSession(user_id="42").to_json()
        mock_get_redis.return_value = redis

        session = await load_browser_session("sid")

        assert session.id == "sid"
        assert session.user_id == "42"
        redis.get.assert_called_once_with(BROWSER_SESSION_PREFIX + "sid")

    @patch("oidcauth.auth.sessions.get_redis_client")
    async def test_missing_starts_fresh(self, mock_get_redis):
        redis = AsyncMock()
        redis.get.return_value = None
        mock_get_redis.return_value = redis

        session = await load_browser_session("expired")

        assert session.id != "expired"
        assert session.user_id is None

    async def test_no_cookie(self):
        session = await load_browser_session(None)
        assert len(session.id) > 20


class TestSaveAndDelete:
    @patch("oidcauth.auth.sessions.get_redis_client")
    async def test_save_sets_ttl(self, mock_get_redis):
        redis = AsyncMock()
        mock_get_redis.return_value = redis

        await save_browser_session(BrowserSession(id="sid", user_id="42"))

        call_args = redis.set.call_args
        assert call_args[0][0] == BROWSER_SESSION_PREFIX + "sid"
        assert json.loads(call_args[0][1])["user_id"] == "42"
        assert call_args[1]["ex"] == 12 * 3600

    @patch("oidcauth.auth.sessions.get_redis_client")
    async def test_delete(self, mock_get_redis):
        redis = AsyncMock()
        redis.delete.return_value = 1
        mock_get_redis.return_value = redis

        assert await delete_browser_session("sid") is True
        redis.delete.assert_called_once_with(BROWSER_SESSION_PREFIX + "sid")
