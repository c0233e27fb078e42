"""
auth/tokens.py -- OAuth state tokens, session ids, and the session cookie.

Security design decisions:
  State tokens: secrets.token_hex(32) gives 256 bits of entropy. The value is
       round-tripped through the provider redirect and compared against the
       copy held in the signed pre-login cookie. Comparison is constant-time
       (hmac.compare_digest) so response time does not reveal how many leading
       characters of a forged state were correct.

  Session ids: same construction as state tokens, separate generator so the
       two namespaces never share values. The id is the only thing the browser
       holds -- all session data stays server-side in the sessions table.

  Cookie: httpOnly + samesite=lax. secure is driven by SECURE_COOKIES so
       local development over plain HTTP still works.

Layer rule: no imports from api/ or web/. Import from core/ is allowed --
core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hmac
import secrets

from core.config import get_settings

SESSION_COOKIE = "session_id"
STATE_KEY = "oauth_state"

_TOKEN_BYTES = 32


# ---------------------------------------------------------------------------
# OAuth state (CSRF protection)
# ---------------------------------------------------------------------------


def generate_state() -> str:
    """Return 32 random bytes as 64 hex characters."""
    return secrets.token_hex(_TOKEN_BYTES)


def validate_state(request_token: str | None, stored_token: str | None) -> bool:
    """Return True only when both tokens are present and identical.

    Length is checked first (it is not secret -- every state we issue is 64
    chars). The byte comparison itself never short-circuits on the first
    mismatch.
    """
    if not request_token or not stored_token:
        return False
    a = request_token.encode("utf-8")
    b = stored_token.encode("utf-8")
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a, b)


# ---------------------------------------------------------------------------
# Session ids
# ---------------------------------------------------------------------------


def generate_session_id() -> str:
    """Return a fresh opaque session id (64 hex chars)."""
    return secrets.token_hex(_TOKEN_BYTES)


def redact(token: str | None) -> str:
    """Shorten a session id or state for log lines."""
    if not token:
        return "<empty>"
    return f"{token[:8]}..."


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, session_id: str, max_age: int = 0) -> None:
    """Write the session id as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": sent on top-level navigations (the provider's redirect back
        to /auth/callback is one), withheld on cross-site POST.
    max_age: matches the server-side session duration so both expire together.
        0 (default) uses Settings.session_duration_seconds.
    """
    settings = get_settings()
    duration = max_age if max_age > 0 else settings.session_duration_seconds
    response.set_cookie(
        SESSION_COOKIE,
        value=session_id,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=duration,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(SESSION_COOKIE, httponly=True, samesite="lax")
