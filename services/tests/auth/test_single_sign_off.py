"""Tests for single sign-off and the session-check frame."""

import pytest

from oidcauth.auth.single_sign_off import (
    DEFAULT_LOGOUT_URL,
    SessionCheckAction,
    build_logout_url,
    handle_session_check_response,
    render_session_check,
    session_check_message,
)
from oidcauth.config import LoginFlowConfig

RETURN_TO = "https://lms.example.com/"


class TestBuildLogoutUrl:
    def test_disabled(self):
        assert build_logout_url(LoginFlowConfig(single_sign_off=False), RETURN_TO) is None

    def test_empty_uri_uses_default(self):
        config = LoginFlowConfig(single_sign_off=True, logout_uri="")
        url = build_logout_url(config, RETURN_TO)

        assert url.startswith(DEFAULT_LOGOUT_URL + "?")
        assert "post_logout_redirect_uri=https%3A%2F%2Flms.example.com%2F" in url

    def test_canonical_endpoint_gets_parameter(self):
        uri = "https://login.microsoftonline.com/contoso.onmicrosoft.com/oauth2/logout"
        url = build_logout_url(LoginFlowConfig(single_sign_off=True, logout_uri=uri), RETURN_TO)

        assert url.startswith(uri + "?post_logout_redirect_uri=")

    def test_other_uri_verbatim(self):
        uri = "https://idp.example.com/logout?client=x"
        url = build_logout_url(LoginFlowConfig(single_sign_off=True, logout_uri=uri), RETURN_TO)

        assert url == uri


class TestSessionCheckProtocol:
    config = LoginFlowConfig(
        client_id="client-123",
        oauth_origin="https://login.microsoftonline.com",
        session_check_endpoint="https://login.microsoftonline.com/common/oauth2/checksession",
    )

    def test_message(self):
        assert session_check_message("client-123", "ss-1") == "client-123 ss-1"

    def test_changed_logs_out(self):
        action = handle_session_check_response(self.config.oauth_origin, "changed", self.config)
        assert action == SessionCheckAction.LOGOUT

    @pytest.mark.parametrize("data", ["unchanged", "error"])
    def test_other_answers_continue(self, data):
        action = handle_session_check_response(self.config.oauth_origin, data, self.config)
        assert action == SessionCheckAction.CONTINUE

    def test_foreign_origin_ignored(self):
        action = handle_session_check_response("https://evil.example.com", "changed", self.config)
        assert action == SessionCheckAction.IGNORE

    def test_render(self):
        html = render_session_check(self.config, "ss-1", "https://lms.example.com/auth/oidc/logout")

        assert 'src="https://login.microsoftonline.com/common/oauth2/checksession"' in html
        assert '"client-123 ss-1"' in html
        assert '"https://login.microsoftonline.com"' in html
        assert "10000" in html

    def test_render_escapes_values(self):
        html = render_session_check(self.config, "</script><b>", "https://lms.example.com/")
        assert "</script><b>" not in html

    def test_render_without_session_state(self):
        assert render_session_check(self.config, None, "https://lms.example.com/") is None

    def test_render_without_endpoint(self):
        assert render_session_check(LoginFlowConfig(), "ss-1", "https://lms.example.com/") is None
