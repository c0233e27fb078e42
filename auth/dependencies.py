"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The browser holds one thing: the opaque session_id cookie set after a
successful callback. Every request resolves it through
AuthService.validate_session(), which reads the sessions table -- there is no
signed user payload to trust and nothing cached in the process.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
get_session_id() returns the raw cookie for routes that act on the session
itself (logout, session listing).

Layer rule: no imports from web/ or api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import User
from auth.service import AuthService
from auth.tokens import SESSION_COOKIE


def get_session_id(request: Request) -> str | None:
    return request.cookies.get(SESSION_COOKIE) or None


def try_get_current_user(request: Request) -> User | None:
    """Resolve the session cookie to a User.

    Returns None when the cookie is absent, the session is unknown, expired or
    orphaned, or the auth service is not ready. Never raises -- callers that
    need a hard 401 should use get_current_user().
    """
    session_id = get_session_id(request)
    if not session_id:
        return None
    auth_service: AuthService = request.app.state.auth_service
    return auth_service.validate_session(session_id)


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user
