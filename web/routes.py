"""
web/routes.py -- Browser routes for the SSO gateway.

These routes serve server-rendered HTML and redirects. They share app.state
with the API routes (same auth service and stores).

Routes:
  GET  /                          -- redirect to /dashboard or /login
  GET  /login                     -- login page with provider buttons
  GET  /auth/callback/{provider}  -- OAuth callback: upsert user, start session
  GET  /auth/{provider}           -- redirect to the provider (rate limited)
  POST /logout                    -- destroy session, clear cookie, redirect /login
  GET  /dashboard                 -- protected page

Error reporting:
  Every failed login step ends in 302 /login?error=<message>. The message is
  produced by auth.errors.user_message() from the error kind, never from the
  exception text, and /login re-checks it against known_messages() before
  rendering [M3]. Provider error bodies and stack traces only reach the log.

Security:
  [H1] The OAuth state is popped from the signed session cookie on every
       callback, success or failure, so a state value is usable exactly once.
  [H2] GET /auth/{provider} is rate-limited per IP (LOGIN_RATE_LIMIT).
  [M5] Cache-Control: no-store on responses that set or clear the session cookie.
  Session fixation: a session id the browser already held is destroyed when a
  new login succeeds.
"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from api.limiter import limiter
from auth.dependencies import get_session_id, try_get_current_user
from auth.errors import AuthError, known_messages, provider_denied_message, user_message
from auth.service import AuthService
from auth.tokens import STATE_KEY, clear_session_cookie, redact, set_session_cookie
from core.config import get_settings

logger = logging.getLogger("ssogate.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
# layout.html calls this to decide whether to show the sign-out button.
templates.env.globals["try_get_current_user"] = try_get_current_user
router = APIRouter()

_LOGIN_RATE_LIMIT = get_settings().login_rate_limit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _login_redirect(message: Optional[str] = None) -> RedirectResponse:
    """302 to /login, carrying a browser-safe message when given."""
    url = "/login"
    if message:
        url = f"/login?{urlencode({'error': message})}"
    return RedirectResponse(url, status_code=302)


def _unauthenticated_redirect(request: Request) -> RedirectResponse:
    """302 to /login for a protected page. A cookie that no longer resolves
    to a session is cleared on the way out.
    """
    resp = _login_redirect()
    if get_session_id(request):
        clear_session_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# GET / and GET /login
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def index(request: Request) -> RedirectResponse:
    if try_get_current_user(request) is not None:
        return RedirectResponse("/dashboard", status_code=302)
    return _login_redirect()


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> HTMLResponse:
    """Render the login page with one button per configured provider."""
    if try_get_current_user(request) is not None:
        return RedirectResponse("/dashboard", status_code=302)

    # Only messages this app generates are rendered [M3].
    error = request.query_params.get("error", "")
    error_msg = error if error in known_messages() else None
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "error_msg": error_msg,
            "providers": _auth_service(request).enabled_providers(),
        },
    )


# ---------------------------------------------------------------------------
# OAuth flow
#
# /auth/callback/{provider} has two path segments and /auth/{provider} one,
# so the two never shadow each other; callback is still registered first.
# ---------------------------------------------------------------------------


@router.get("/auth/callback/{provider}", response_class=HTMLResponse, name="oauth_callback")
def oauth_callback(
    request: Request,
    provider: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
) -> RedirectResponse:
    """Finish a login: validate the callback, upsert the user, issue the session cookie.

    Flow:
      1. Pop the stored state [H1] -- whatever happens next, it is spent.
      2. A provider-reported error (user denied consent, etc.) ends the attempt.
      3. handle_callback(): code check, state check, exchange, upsert.
      4. create_session(); destroy any session the browser already held.
      5. Set the session cookie and redirect to /dashboard.
    """
    stored_state = request.session.pop(STATE_KEY, None)

    if error:
        logger.warning(
            "%s callback reported error=%r description=%r",
            provider,
            error,
            request.query_params.get("error_description"),
        )
        return _login_redirect(provider_denied_message(provider))

    auth_service = _auth_service(request)
    try:
        profile = auth_service.handle_callback(provider, code, state, stored_state)
        session_id = auth_service.create_session(profile.id)
    except AuthError as exc:
        logger.warning("%s login failed: %r details=%s", provider, exc, exc.details)
        return _login_redirect(user_message(exc))

    previous = get_session_id(request)
    if previous:
        try:
            auth_service.destroy_session(previous)
        except AuthError as exc:
            logger.warning("Could not destroy previous session %s: %s", redact(previous), exc.message)

    resp = RedirectResponse("/dashboard", status_code=302)
    set_session_cookie(resp, session_id)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@limiter.limit(_LOGIN_RATE_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.get("/auth/{provider}", response_class=HTMLResponse)
def oauth_redirect(request: Request, provider: str) -> RedirectResponse:
    """Redirect the browser to the provider's authorization page.

    The provider name is checked by the auth service before any URL is
    built, so a crafted name cannot produce an arbitrary redirect.
    """
    try:
        url = _auth_service(request).initiate(provider, request.session)
    except AuthError as exc:
        logger.warning("Could not start %s login: %r", provider, exc)
        return _login_redirect(user_message(exc))
    resp = RedirectResponse(url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# POST /logout
# ---------------------------------------------------------------------------


@router.post("/logout")
def logout(request: Request) -> RedirectResponse:
    """Destroy the session and redirect to /login.

    Always redirects, even when the session was already gone or could not be
    deleted -- the cookie is cleared either way.
    """
    session_id = get_session_id(request)
    if session_id:
        try:
            _auth_service(request).destroy_session(session_id)
        except AuthError as exc:
            logger.error("Logout could not destroy session %s: %s", redact(session_id), exc.message)
    request.session.clear()
    resp = _login_redirect()
    clear_session_cookie(resp)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# GET /dashboard
# ---------------------------------------------------------------------------


@router.get("/dashboard", response_class=HTMLResponse)
def dashboard(request: Request) -> HTMLResponse:
    user = try_get_current_user(request)
    if user is None:
        return _unauthenticated_redirect(request)
    auth_service = _auth_service(request)
    resp = templates.TemplateResponse(
        request,
        "dashboard.html",
        {
            "user": user,
            "sessions": auth_service.list_sessions(user.id),
            "current_session_id": get_session_id(request),
        },
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp
