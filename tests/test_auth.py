"""
Liedersammlung - Authentication Tests

Tests for the liedersammlung/auth.py module. Validates:
- Session cookie creation and parsing (signed HMAC cookies)
- Cookie signature verification (tamper detection)
- Cookie expiry enforcement
- Shared password verification
- auth_required middleware logic (public paths, protected paths)
- Login page rendering (with and without error messages)
- Session cookie set/clear on Response objects
- The login / logout round trip through the application
"""

import hashlib
import hmac
import json
import time
from unittest.mock import MagicMock, patch

from liedersammlung.auth import (
    _create_session_cookie,
    _parse_session_cookie,
    _sign,
    auth_required,
    clear_session_cookie,
    is_authenticated,
    render_login_page,
    set_session_cookie,
    verify_password,
)
from liedersammlung.config import SECRET_KEY, SESSION_COOKIE_NAME, SESSION_MAX_AGE

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_request(cookies: dict | None = None, path: str = "/") -> MagicMock:
    """Create a mock FastAPI Request with optional cookies and URL path."""
    request = MagicMock()
    request.cookies = cookies or {}
    url_mock = MagicMock()
    url_mock.path = path
    request.url = url_mock
    return request


def _make_response() -> MagicMock:
    """Create a mock FastAPI Response with set_cookie and delete_cookie tracking."""
    response = MagicMock()
    response.set_cookie = MagicMock()
    response.delete_cookie = MagicMock()
    return response


def _cookie_with_ts(ts: int) -> str:
    data = json.dumps({"ok": True, "ts": ts})
    return f"{data}|{_sign(data)}"


# ===========================================================================
# _sign
# ===========================================================================


class TestSign:
    """Test the HMAC signing helper."""

    def test_returns_hex_string(self):
        sig = _sign("hello")
        assert isinstance(sig, str)
        # HMAC-SHA256 hex digest is 64 chars
        assert len(sig) == 64

    def test_deterministic(self):
        assert _sign("payload") == _sign("payload")

    def test_different_payloads_different_sigs(self):
        assert _sign("payload_a") != _sign("payload_b")

    def test_unicode_payload(self):
        assert len(_sign("Grüß Gott")) == 64

    def test_matches_manual_hmac(self):
        payload = "test data"
        expected = hmac.new(
            SECRET_KEY.encode("utf-8"),
            payload.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        assert _sign(payload) == expected


# ===========================================================================
# _create_session_cookie / _parse_session_cookie
# ===========================================================================


class TestSessionCookie:
    """Test session cookie creation and parsing."""

    def test_create_contains_pipe_separator(self):
        assert "|" in _create_session_cookie()

    def test_create_contains_timestamp(self):
        before = int(time.time())
        cookie = _create_session_cookie()
        after = int(time.time())
        payload = json.loads(cookie.rsplit("|", 1)[0])
        assert payload["ok"] is True
        assert before <= payload["ts"] <= after

    def test_cookie_does_not_contain_password(self):
        with patch("liedersammlung.auth.APP_PASSWORD", "geheim"):
            assert "geheim" not in _create_session_cookie()

    def test_round_trip(self):
        session = _parse_session_cookie(_create_session_cookie())
        assert session is not None
        assert session["ok"] is True

    def test_parse_empty_string(self):
        assert _parse_session_cookie("") is None

    def test_parse_no_pipe(self):
        assert _parse_session_cookie("no_pipe_separator") is None

    def test_parse_invalid_json(self):
        data = "not_json"
        assert _parse_session_cookie(f"{data}|{_sign(data)}") is None

    def test_parse_non_object_json(self):
        data = json.dumps([1, 2, 3])
        assert _parse_session_cookie(f"{data}|{_sign(data)}") is None

    def test_parse_tampered_data(self):
        cookie = _create_session_cookie()
        data_part, sig_part = cookie.rsplit("|", 1)
        tampered = data_part.replace("true", "false")
        assert _parse_session_cookie(f"{tampered}|{sig_part}") is None

    def test_parse_tampered_signature(self):
        cookie = _create_session_cookie()
        data_part, sig_part = cookie.rsplit("|", 1)
        bad_sig = ("0" if sig_part[0] != "0" else "1") + sig_part[1:]
        assert _parse_session_cookie(f"{data_part}|{bad_sig}") is None

    def test_parse_expired_cookie(self):
        old_ts = int(time.time()) - SESSION_MAX_AGE - 3600
        assert _parse_session_cookie(_cookie_with_ts(old_ts)) is None

    def test_parse_just_expired(self):
        expired_ts = int(time.time()) - SESSION_MAX_AGE - 1
        assert _parse_session_cookie(_cookie_with_ts(expired_ts)) is None

    def test_parse_fresh_cookie(self):
        assert _parse_session_cookie(_cookie_with_ts(int(time.time()))) is not None


# ===========================================================================
# verify_password
# ===========================================================================


class TestVerifyPassword:
    """Test shared password verification."""

    @patch("liedersammlung.auth.APP_PASSWORD", "halleluja")
    def test_correct_password(self):
        assert verify_password("halleluja") is True

    @patch("liedersammlung.auth.APP_PASSWORD", "halleluja")
    def test_wrong_password(self):
        assert verify_password("amen") is False

    @patch("liedersammlung.auth.APP_PASSWORD", "CaseSensitive")
    def test_case_sensitive(self):
        assert verify_password("casesensitive") is False

    @patch("liedersammlung.auth.APP_PASSWORD", "halleluja")
    def test_empty_input(self):
        assert verify_password("") is False

    @patch("liedersammlung.auth.APP_PASSWORD", "")
    def test_no_password_configured(self):
        """With the gate disabled there is nothing to log in to."""
        assert verify_password("anything") is False

    @patch("liedersammlung.auth.APP_PASSWORD", "Grüß Gott")
    def test_unicode_password(self):
        assert verify_password("Grüß Gott") is True


# ===========================================================================
# is_authenticated
# ===========================================================================


class TestIsAuthenticated:
    """Test the is_authenticated() helper."""

    def test_true_for_valid_session(self):
        request = _make_request(cookies={SESSION_COOKIE_NAME: _create_session_cookie()})
        assert is_authenticated(request) is True

    def test_false_for_no_session(self):
        assert is_authenticated(_make_request(cookies={})) is False

    def test_false_for_invalid_session(self):
        request = _make_request(cookies={SESSION_COOKIE_NAME: "invalid"})
        assert is_authenticated(request) is False

    def test_false_for_expired_session(self):
        old_ts = int(time.time()) - SESSION_MAX_AGE - 10
        request = _make_request(cookies={SESSION_COOKIE_NAME: _cookie_with_ts(old_ts)})
        assert is_authenticated(request) is False


# ===========================================================================
# set_session_cookie / clear_session_cookie
# ===========================================================================


class TestSetClearSessionCookie:
    """Test setting and clearing session cookies on responses."""

    def test_set_session_cookie_attributes(self):
        response = _make_response()
        set_session_cookie(response)
        response.set_cookie.assert_called_once()
        kwargs = response.set_cookie.call_args.kwargs
        assert kwargs["key"] == SESSION_COOKIE_NAME
        assert kwargs["httponly"] is True
        assert kwargs["samesite"] == "lax"
        assert kwargs["path"] == "/"
        assert kwargs["max_age"] == SESSION_MAX_AGE

    def test_set_session_cookie_value_is_parseable(self):
        response = _make_response()
        set_session_cookie(response)
        value = response.set_cookie.call_args.kwargs["value"]
        assert _parse_session_cookie(value) is not None

    def test_clear_session_cookie_calls_delete(self):
        response = _make_response()
        clear_session_cookie(response)
        response.delete_cookie.assert_called_once()
        assert response.delete_cookie.call_args.kwargs["key"] == SESSION_COOKIE_NAME


# ===========================================================================
# auth_required
# ===========================================================================


class TestAuthRequired:
    """Test the auth_required() middleware helper."""

    @patch("liedersammlung.auth.APP_PASSWORD", "secret")
    def test_requires_auth_for_root(self):
        assert auth_required(_make_request(path="/")) is True

    @patch("liedersammlung.auth.APP_PASSWORD", "secret")
    def test_requires_auth_for_api(self):
        assert auth_required(_make_request(path="/api/songs")) is True

    @patch("liedersammlung.auth.APP_PASSWORD", "secret")
    def test_requires_auth_for_proxy(self):
        assert auth_required(_make_request(path="/api/webdav-file")) is True

    @patch("liedersammlung.auth.APP_PASSWORD", "secret")
    def test_requires_auth_for_upload(self):
        assert auth_required(_make_request(path="/upload")) is True

    @patch("liedersammlung.auth.APP_PASSWORD", "secret")
    def test_login_is_public(self):
        assert auth_required(_make_request(path="/login")) is False

    @patch("liedersammlung.auth.APP_PASSWORD", "secret")
    def test_health_is_public(self):
        assert auth_required(_make_request(path="/api/health")) is False

    @patch("liedersammlung.auth.APP_PASSWORD", "secret")
    def test_static_is_public(self):
        assert auth_required(_make_request(path="/static/style.css")) is False

    @patch("liedersammlung.auth.APP_PASSWORD", "secret")
    def test_migration_is_public(self):
        """The migration endpoint is guarded by its own token."""
        assert auth_required(_make_request(path="/api/migrate-webdav")) is False

    @patch("liedersammlung.auth.APP_PASSWORD", "secret")
    def test_public_prefix_needs_separator(self):
        assert auth_required(_make_request(path="/staticfoo")) is True

    @patch("liedersammlung.auth.APP_PASSWORD", "secret")
    def test_favicon_is_public(self):
        assert auth_required(_make_request(path="/favicon.ico")) is False

    @patch("liedersammlung.auth.APP_PASSWORD", "")
    def test_gate_disabled_without_password(self):
        assert auth_required(_make_request(path="/api/songs")) is False

    @patch("liedersammlung.auth.APP_PASSWORD", "secret")
    def test_authenticated_request_passes(self):
        request = _make_request(
            cookies={SESSION_COOKIE_NAME: _create_session_cookie()}, path="/"
        )
        assert auth_required(request) is False


# ===========================================================================
# render_login_page
# ===========================================================================


class TestRenderLoginPage:
    """Test the login page HTML renderer."""

    def test_returns_html_response(self):
        response = render_login_page()
        assert response.status_code == 200
        assert "text/html" in response.media_type

    def test_contains_password_form(self):
        body = render_login_page().body.decode("utf-8")
        assert 'action="/login"' in body
        assert 'name="password"' in body
        assert 'type="submit"' in body

    def test_no_username_field(self):
        body = render_login_page().body.decode("utf-8")
        assert 'name="username"' not in body

    def test_no_error_by_default(self):
        body = render_login_page().body.decode("utf-8")
        assert '<div class="error-msg">' not in body

    def test_shows_error_message(self):
        response = render_login_page(error="Falsches Passwort", status_code=401)
        body = response.body.decode("utf-8")
        assert response.status_code == 401
        assert '<div class="error-msg">' in body
        assert "Falsches Passwort" in body

    def test_percent_signs_rendered(self):
        body = render_login_page().body.decode("utf-8")
        assert "100%" in body
        assert "%%" not in body


# ===========================================================================
# Login flow through the app
# ===========================================================================


class TestLoginFlow:
    """The password gate as seen by a browser."""

    def test_api_requires_login(self, make_client, gate):
        with make_client() as client:
            response = client.get("/api/songs?type=scores")
        assert response.status_code == 401
        assert response.json() == {"error": "Authentication required"}

    def test_page_redirects_to_login(self, make_client, gate):
        with make_client() as client:
            response = client.get("/", follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"] == "/login"

    def test_health_stays_public(self, make_client, gate):
        with make_client() as client:
            assert client.get("/api/health").status_code == 200

    def test_wrong_password(self, make_client, gate):
        with make_client() as client:
            response = client.post("/login", data={"password": "falsch"})
        assert response.status_code == 401
        assert "Falsches Passwort" in response.text

    def test_login_then_logout(self, make_client, gate):
        with make_client() as client:
            response = client.post(
                "/login", data={"password": gate}, follow_redirects=False
            )
            assert response.status_code == 302
            assert SESSION_COOKIE_NAME in response.cookies

            assert client.get("/api/songs?type=scores").status_code == 200

            client.get("/logout", follow_redirects=False)
            client.cookies.clear()
            assert client.get("/api/songs?type=scores").status_code == 401

    def test_login_page_redirects_without_password(self, make_client):
        with make_client() as client:
            response = client.get("/login", follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"] == "/"
