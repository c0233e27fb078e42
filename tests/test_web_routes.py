"""
tests/test_web_routes.py -- Integration tests for the browser login flow.

Runs the assembled ASGI app with web_client (follow_redirects=False) and a
FakeOAuthClient, so every redirect Location can be asserted directly.

Coverage:
  - / and /dashboard redirects for anonymous and signed-in browsers
  - /auth/{provider}: state stored in the signed cookie, provider redirect
  - callback success: session cookie set, user created, state spent
  - callback failures: provider error, missing code, bad state, exchange
    failure -- each ends at /login?error=<known message>
  - /login renders only known error messages [M3]
  - logout: session destroyed, cookie cleared, always redirects
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from auth.errors import TokenExchangeError
from auth.models import OAuthProfile
from tests.conftest import FakeOAuthClient, login

ALICE = OAuthProfile(id="12345", username="alice", email="alice@x.io", provider="github")
BOB = OAuthProfile(id="ms-9", username="Bob Jones", email="bob@contoso.com", provider="microsoft")


def _error_param(location: str) -> str:
    parsed = urlparse(location)
    assert parsed.path == "/login"
    return parse_qs(parsed.query)["error"][0]


def _set_cookie_headers(resp) -> list[str]:
    return resp.headers.get_list("set-cookie")


class TestAnonymous:
    def test_root_redirects_to_login(self, web_client: TestClient) -> None:
        resp = web_client.get("/")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"

    def test_dashboard_requires_session(self, web_client: TestClient) -> None:
        resp = web_client.get("/dashboard")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"

    def test_stale_cookie_is_cleared(self, web_client: TestClient) -> None:
        web_client.cookies.set("session_id", "0" * 64)
        resp = web_client.get("/dashboard")
        assert resp.status_code == 302
        assert any(h.startswith("session_id=") and "Max-Age=0" in h for h in _set_cookie_headers(resp))

    def test_login_page_lists_providers(self, web_client: TestClient) -> None:
        resp = web_client.get("/login")
        assert resp.status_code == 200
        assert 'href="/auth/microsoft"' in resp.text
        assert 'href="/auth/github"' in resp.text


class TestInitiate:
    def test_redirects_to_provider_with_state(self, web_client: TestClient, fake_oauth: FakeOAuthClient) -> None:
        resp = web_client.get("/auth/github")
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("https://idp.example.com/github/authorize")
        provider, state = fake_oauth.authorize_calls[-1]
        assert provider == "github"
        assert len(state) == 64
        assert resp.headers["cache-control"] == "no-store"

    def test_unknown_provider(self, web_client: TestClient, fake_oauth: FakeOAuthClient) -> None:
        resp = web_client.get("/auth/gitlab")
        assert resp.status_code == 302
        assert _error_param(resp.headers["location"]) == "Unsupported sign-in provider."
        assert fake_oauth.authorize_calls == []


class TestCallback:
    def test_successful_login(self, web_client: TestClient, fake_oauth: FakeOAuthClient, auth_service) -> None:
        session_id = login(web_client, fake_oauth, ALICE)
        assert len(session_id) == 64
        user = auth_service.validate_session(session_id)
        assert user is not None
        assert user.username == "alice"

        resp = web_client.get("/dashboard")
        assert resp.status_code == 200
        assert "Welcome, alice" in resp.text
        assert "alice@x.io" in resp.text
        assert session_id[:8] in resp.text

        resp = web_client.get("/")
        assert resp.headers["location"] == "/dashboard"
        resp = web_client.get("/login")
        assert resp.headers["location"] == "/dashboard"

    def test_state_is_single_use(self, web_client: TestClient, fake_oauth: FakeOAuthClient) -> None:
        fake_oauth.profile = ALICE
        resp = web_client.get("/auth/github")
        state = parse_qs(urlparse(resp.headers["location"]).query)["state"][0]
        first = web_client.get("/auth/callback/github", params={"code": "c", "state": state})
        assert first.headers["location"] == "/dashboard"
        replay = web_client.get("/auth/callback/github", params={"code": "c", "state": state})
        assert _error_param(replay.headers["location"]) == (
            "Authentication request validation failed. Please try again."
        )
        assert len(fake_oauth.fetch_calls) == 1

    def test_mismatched_state(self, web_client: TestClient, fake_oauth: FakeOAuthClient) -> None:
        web_client.get("/auth/github")
        resp = web_client.get("/auth/callback/github", params={"code": "c", "state": "f" * 64})
        assert _error_param(resp.headers["location"]) == (
            "Authentication request validation failed. Please try again."
        )
        assert fake_oauth.fetch_calls == []
        assert "session_id" not in web_client.cookies

    def test_missing_code(self, web_client: TestClient, fake_oauth: FakeOAuthClient) -> None:
        resp = web_client.get("/auth/github")
        state = parse_qs(urlparse(resp.headers["location"]).query)["state"][0]
        resp = web_client.get("/auth/callback/github", params={"state": state})
        assert _error_param(resp.headers["location"]) == "Invalid authorization response. Please try again."
        assert fake_oauth.fetch_calls == []

    def test_provider_reported_error(self, web_client: TestClient, fake_oauth: FakeOAuthClient) -> None:
        web_client.get("/auth/microsoft")
        resp = web_client.get(
            "/auth/callback/microsoft",
            params={"error": "access_denied", "error_description": "The user cancelled"},
        )
        assert _error_param(resp.headers["location"]) == "Sign-in with Microsoft was cancelled or denied."
        assert fake_oauth.fetch_calls == []

    def test_exchange_failure_hides_provider_body(self, web_client: TestClient, fake_oauth: FakeOAuthClient) -> None:
        fake_oauth.error = TokenExchangeError("HTTP 400", details={"body": "AADSTS70008: secret detail"})
        resp = web_client.get("/auth/microsoft")
        state = parse_qs(urlparse(resp.headers["location"]).query)["state"][0]
        resp = web_client.get("/auth/callback/microsoft", params={"code": "c", "state": state})
        message = _error_param(resp.headers["location"])
        assert message == "Authentication with Microsoft failed. Please try again."
        assert "AADSTS" not in resp.headers["location"]

    def test_relogin_replaces_previous_session(
        self, web_client: TestClient, fake_oauth: FakeOAuthClient, auth_service
    ) -> None:
        first = login(web_client, fake_oauth, BOB)
        second = login(web_client, fake_oauth, BOB)
        assert first != second
        assert auth_service.validate_session(first) is None
        assert auth_service.validate_session(second) is not None


class TestLoginPageMessages:
    def test_known_message_rendered(self, web_client: TestClient) -> None:
        msg = "Authentication with GitHub failed. Please try again."
        resp = web_client.get("/login", params={"error": msg})
        assert resp.status_code == 200
        assert msg in resp.text

    def test_unknown_message_not_rendered(self, web_client: TestClient) -> None:
        resp = web_client.get("/login", params={"error": "<script>alert(1)</script>"})
        assert resp.status_code == 200
        assert "alert(1)" not in resp.text
        assert 'role="alert"' not in resp.text


class TestLogout:
    def test_logout_destroys_session(self, web_client: TestClient, fake_oauth: FakeOAuthClient, auth_service) -> None:
        session_id = login(web_client, fake_oauth, ALICE)
        resp = web_client.post("/logout")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"
        assert any(h.startswith("session_id=") and "Max-Age=0" in h for h in _set_cookie_headers(resp))
        assert auth_service.validate_session(session_id) is None

        web_client.cookies.clear()
        assert web_client.get("/dashboard").headers["location"] == "/login"

    def test_logout_without_session(self, web_client: TestClient) -> None:
        resp = web_client.post("/logout")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"

    def test_logout_with_unknown_session(self, web_client: TestClient) -> None:
        web_client.cookies.set("session_id", "a" * 64)
        resp = web_client.post("/logout")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"
