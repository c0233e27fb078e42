"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; stores and the auth service do the work.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Provider(str, Enum):
    """The two supported identity providers. Values are stored verbatim."""

    microsoft = "microsoft"
    github = "github"


@dataclass
class User:
    """One local identity bound to exactly one external identity.

    (provider, provider_id) is globally unique. id, provider and provider_id
    never change after creation; username and email are refreshed from the
    provider on later logins.
    """

    id: str
    username: str
    email: str
    provider: str  # "microsoft" | "github"
    provider_id: str  # provider's stable user ID
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_at: str = ""


@dataclass
class Session:
    """One authenticated browser session.

    id is 64 hex chars (32 random bytes). Datetimes are timezone-aware UTC.
    """

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class OAuthProfile:
    """Provider profile normalized to one shape. Never persisted as-is.

    After a successful callback the same shape is returned to the caller with
    id replaced by the local user id.
    """

    id: str
    username: str
    email: str
    provider: str


@dataclass
class SessionStats:
    total: int = 0
    active: int = 0
    expired: int = 0
