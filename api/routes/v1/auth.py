"""
api/routes/v1/auth.py -- Session and identity REST endpoints.

Routes:
  GET    /api/v1/auth/me         -- current user info (requires auth)
  GET    /api/v1/auth/providers  -- list configured OAuth providers (public)
  GET    /api/v1/auth/sessions   -- current user's active sessions (requires auth)
  DELETE /api/v1/auth/sessions   -- revoke every session of the current user (requires auth)

Login, callback and logout are browser flows and live in web/routes.py.

Security:
  [M5] Cache-Control: no-store on responses that describe the caller's identity
       or sessions.
  Session ids are never returned in full -- the 8-char prefix identifies a
  session in the list without making it replayable.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import MeResponse, OAuthProviderInfo, RevokeResponse, SessionResponse
from auth.dependencies import get_current_user, get_session_id
from auth.models import User
from auth.service import AuthService
from auth.tokens import clear_session_cookie

# Auth policy:
# - GET    /api/v1/auth/providers: public -- login page renders buttons from it
# - GET    /api/v1/auth/me:        requires auth (get_current_user)
# - GET    /api/v1/auth/sessions:  requires auth (get_current_user)
# - DELETE /api/v1/auth/sessions:  requires auth (get_current_user)
router = APIRouter()


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty when no credentials are set."""
    auth_service: AuthService = request.app.state.auth_service
    return [OAuthProviderInfo(**p) for p in auth_service.enabled_providers()]


@router.get("/auth/me", response_model=MeResponse)
async def me(response: Response, current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return MeResponse.from_user(current_user)


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
) -> list[SessionResponse]:
    """List the caller's unexpired sessions, newest first. The calling session is flagged."""
    auth_service: AuthService = request.app.state.auth_service
    current_id = get_session_id(request)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return [SessionResponse.from_session(s, current_id) for s in auth_service.list_sessions(current_user.id)]


@router.delete("/auth/sessions", response_model=RevokeResponse)
def revoke_sessions(
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
) -> RevokeResponse:
    """Sign the caller out on every device, including this one."""
    auth_service: AuthService = request.app.state.auth_service
    revoked = auth_service.revoke_all_sessions(current_user.id)
    clear_session_cookie(response)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return RevokeResponse(revoked=revoked)
