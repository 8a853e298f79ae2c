"""
Liedersammlung - Simple Session Auth

One shared password protects the whole viewer.  After a successful login the
browser keeps a signed cookie; the password itself is never stored in it.

Usage:
    - Mount `login_page` and `login_post` on the app.
    - Use `auth_middleware` in main.py to protect every non-public path.
    - Call `is_authenticated(request)` where a route needs to know.
"""

import hashlib
import hmac
import json
import time
from typing import Any

from fastapi import Request, Response
from fastapi.responses import HTMLResponse

from liedersammlung.config import (
    APP_PASSWORD,
    SECRET_KEY,
    SESSION_COOKIE_NAME,
    SESSION_MAX_AGE,
)

# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _sign(payload: str) -> str:
    """Create an HMAC-SHA256 signature for a payload string."""
    return hmac.new(
        SECRET_KEY.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def _create_session_cookie() -> str:
    """Create a signed session cookie value."""
    data = json.dumps({"ok": True, "ts": int(time.time())})
    sig = _sign(data)
    return f"{data}|{sig}"


def _parse_session_cookie(cookie_value: str) -> dict[str, Any] | None:
    """Parse and verify a session cookie.  Returns the session dict or None."""
    if not cookie_value or "|" not in cookie_value:
        return None

    data_part, sig_part = cookie_value.rsplit("|", 1)
    if not hmac.compare_digest(sig_part, _sign(data_part)):
        return None

    try:
        session = json.loads(data_part)
    except json.JSONDecodeError:
        return None
    if not isinstance(session, dict):
        return None

    # Check expiry
    created = session.get("ts", 0)
    if time.time() - created > SESSION_MAX_AGE:
        return None

    return session


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def is_authenticated(request: Request) -> bool:
    """Check whether the current request has a valid session."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME, "")
    return _parse_session_cookie(cookie) is not None


def set_session_cookie(response: Response) -> None:
    """Set the signed session cookie on a response."""
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=_create_session_cookie(),
        max_age=SESSION_MAX_AGE,
        httponly=True,
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    """Remove the session cookie."""
    response.delete_cookie(
        key=SESSION_COOKIE_NAME,
        path="/",
    )


# ---------------------------------------------------------------------------
# Auth check - returns True if request should be blocked
# ---------------------------------------------------------------------------

# Paths that don't require authentication
PUBLIC_PATHS = {
    "/login",
    "/api/health",
    "/static",
    # Protected by its own migration token
    "/api/migrate-webdav",
}


def _is_public(path: str) -> bool:
    """Return True if the path does not require authentication."""
    for pub in PUBLIC_PATHS:
        if path == pub or path.startswith(pub + "/"):
            return True
    # Allow favicon and similar
    if path in ("/favicon.ico", "/robots.txt"):
        return True
    return False


def auth_required(request: Request) -> bool:
    """
    Return True if this request requires auth and the visitor is NOT logged in.

    If APP_PASSWORD is empty, the gate is disabled entirely (always False).
    """
    if not APP_PASSWORD:
        return False

    if _is_public(request.url.path):
        return False

    return not is_authenticated(request)


def verify_password(password: str) -> bool:
    """Verify the submitted password against APP_PASSWORD."""
    if not APP_PASSWORD:
        return False
    return hmac.compare_digest(password.encode("utf-8"), APP_PASSWORD.encode("utf-8"))


# ---------------------------------------------------------------------------
# Login page HTML
# ---------------------------------------------------------------------------

LOGIN_PAGE_HTML = """\
<!doctype html>
<html lang="de">
<head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>Anmelden - Liedersammlung</title>
    <style>
        * { margin: 0; padding: 0; box-sizing: border-box; }

        body {
            min-height: 100vh;
            display: flex;
            align-items: center;
            justify-content: center;
            background: linear-gradient(135deg, #1e3c72 0%%, #2a5298 100%%);
            font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif;
            color: #2c3e50;
        }

        .login-card {
            background: #fff;
            border-radius: 16px;
            padding: 48px 40px 40px;
            width: 100%%;
            max-width: 380px;
            box-shadow: 0 20px 60px rgba(0, 0, 0, 0.35);
            text-align: center;
        }

        .login-card .icon {
            font-size: 3em;
            display: block;
            margin-bottom: 12px;
        }

        .login-card h1 {
            font-size: 1.6em;
            margin-bottom: 24px;
        }

        .login-card input {
            width: 100%%;
            padding: 14px 16px;
            border: 2px solid #d0d7e2;
            border-radius: 8px;
            font-size: 1.1em;
            margin-bottom: 16px;
        }

        .login-card input:focus {
            outline: none;
            border-color: #2a5298;
        }

        .login-btn {
            width: 100%%;
            padding: 14px;
            background: #2a5298;
            border: none;
            border-radius: 8px;
            color: white;
            font-size: 1.1em;
            font-weight: bold;
            cursor: pointer;
        }

        .error-msg {
            background: #fdecea;
            color: #c0392b;
            padding: 10px 14px;
            border-radius: 8px;
            margin-bottom: 16px;
            font-size: 0.95em;
        }
    </style>
</head>
<body>
    <div class="login-card">
        <span class="icon">🎼</span>
        <h1>Liedersammlung</h1>

        %(error_html)s

        <form method="POST" action="/login">
            <input
                type="password"
                name="password"
                placeholder="Passwort"
                autocomplete="current-password"
                required
                autofocus
            />
            <button type="submit" class="login-btn">🔓 Anmelden</button>
        </form>
    </div>
</body>
</html>
"""


def render_login_page(error: str = "", status_code: int = 200) -> HTMLResponse:
    """Render the login page with an optional error message."""
    error_html = ""
    if error:
        error_html = f'<div class="error-msg">❌ {error}</div>'

    html = LOGIN_PAGE_HTML % {"error_html": error_html}
    return HTMLResponse(content=html, status_code=status_code)
