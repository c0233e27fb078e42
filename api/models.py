"""
API response models for the SSO gateway REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from auth.models import Session, User

# ---------------------------------------------------------------------------
# Envelope and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = {}


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    email: str
    provider: str
    created_at: str
    updated_at: str

    @classmethod
    def from_user(cls, user: User) -> "MeResponse":
        return cls(
            user_id=user.id,
            username=user.username,
            email=user.email,
            provider=user.provider,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class OAuthProviderInfo(BaseModel):
    """One configured provider, as rendered on the login page."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class SessionResponse(BaseModel):
    """One active session of the current user. The id is shown as a prefix only."""

    model_config = ConfigDict(frozen=True)

    id_prefix: str
    created_at: datetime
    expires_at: datetime
    current: bool

    @classmethod
    def from_session(cls, session: Session, current_id: Optional[str]) -> "SessionResponse":
        return cls(
            id_prefix=session.id[:8],
            created_at=session.created_at,
            expires_at=session.expires_at,
            current=session.id == current_id,
        )


class RevokeResponse(BaseModel):
    """Response for DELETE /api/v1/auth/sessions."""

    model_config = ConfigDict(frozen=True)

    revoked: int
