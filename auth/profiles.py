"""
auth/profiles.py -- Provider-specific profile normalization.

Microsoft Graph and GitHub describe a user with different field names. This
module maps both onto OAuthProfile. Pure functions: no I/O, no logging.

Normalization never fails on odd-but-well-typed input (missing keys, None
values, an empty email list). It falls back to "Unknown" / "" instead and
leaves rejection to UserStore.create_user(), which validates every field.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from typing import Any

from auth.errors import UnsupportedProviderError
from auth.models import OAuthProfile, Provider

UNKNOWN_USERNAME = "Unknown"


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def select_primary_email(entries: list | None) -> str:
    """Pick the address from GitHub's GET /user/emails response.

    The entry marked primary wins; otherwise the first entry; otherwise "".
    Unverified addresses are not filtered out here.
    """
    usable = [e for e in entries or [] if isinstance(e, dict)]
    for entry in usable:
        if entry.get("primary"):
            return _text(entry.get("email"))
    if usable:
        return _text(usable[0].get("email"))
    return ""


def _normalize_microsoft(payload: dict) -> OAuthProfile:
    # Graph leaves mail empty for many personal accounts; userPrincipalName is
    # the sign-in address in that case.
    email = _text(payload.get("mail")) or _text(payload.get("userPrincipalName"))
    username = _text(payload.get("displayName")) or email.split("@")[0] or UNKNOWN_USERNAME
    return OAuthProfile(
        id=_text(payload.get("id")),
        username=username,
        email=email,
        provider=Provider.microsoft.value,
    )


def _normalize_github(payload: dict, emails: list | None) -> OAuthProfile:
    username = _text(payload.get("login")) or _text(payload.get("name")) or UNKNOWN_USERNAME
    return OAuthProfile(
        id=_text(payload.get("id")),  # numeric on GitHub
        username=username,
        email=select_primary_email(emails),
        provider=Provider.github.value,
    )


def normalize_profile(provider: str, payload: dict | None, emails: list | None = None) -> OAuthProfile:
    """Map a raw provider profile onto OAuthProfile.

    Args:
        provider: "microsoft" or "github".
        payload:  JSON body of the provider's profile endpoint
                  (Graph /me, GitHub /user).
        emails:   GitHub only -- JSON body of GET /user/emails.

    Raises:
        UnsupportedProviderError: provider is not one of the two above.
    """
    payload = payload if isinstance(payload, dict) else {}
    if provider == Provider.microsoft.value:
        return _normalize_microsoft(payload)
    if provider == Provider.github.value:
        return _normalize_github(payload, emails)
    raise UnsupportedProviderError(f"Unsupported OAuth provider: {provider!r}", details={"provider": provider})
