"""
auth/errors.py -- Exception taxonomy for the authentication core.

Every failure the core raises is an AuthError subclass. Each carries:
  kind        -- ErrorKind tag; callers match on it (or on the subclass).
  status_code -- HTTP status the route layer should map it to.
  provider    -- "microsoft" / "github" when the failure belongs to a login
                 attempt; attached by the auth service on the way out.
  details     -- dict for logs only. Never rendered to the browser.

user_message() turns any error into a short string that is safe to put in a
redirect URL: no provider error bodies, ids or stack traces.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    DATABASE_ERROR = "DATABASE_ERROR"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    INVALID_STATE = "OAUTH_INVALID_STATE"
    CALLBACK_ERROR = "OAUTH_CALLBACK_ERROR"
    UNSUPPORTED_PROVIDER = "OAUTH_UNSUPPORTED_PROVIDER"
    PROVIDER_ERROR = "OAUTH_PROVIDER_ERROR"
    TOKEN_EXCHANGE_ERROR = "OAUTH_TOKEN_EXCHANGE"
    PROFILE_FETCH_ERROR = "OAUTH_PROFILE_FETCH"
    TOKEN_ERROR = "OAUTH_TOKEN_ERROR"
    PROFILE_ERROR = "OAUTH_PROFILE_ERROR"


class AuthError(Exception):
    """Base class. Subclasses fix kind and the default status code."""

    kind: ErrorKind = ErrorKind.AUTHENTICATION_FAILED
    default_status: int = 500

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        provider: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code if status_code is not None else self.default_status
        self.provider = provider
        self.details = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value}, status={self.status_code}, message={self.message!r})"


class ValidationError(AuthError):
    kind = ErrorKind.VALIDATION_ERROR
    default_status = 400


class NotFoundError(AuthError):
    kind = ErrorKind.NOT_FOUND
    default_status = 404


class ConflictError(AuthError):
    kind = ErrorKind.CONFLICT
    default_status = 409


class StorageError(AuthError):
    kind = ErrorKind.DATABASE_ERROR
    default_status = 500


class AuthenticationFailed(AuthError):
    kind = ErrorKind.AUTHENTICATION_FAILED
    default_status = 500


class SessionExpired(AuthError):
    kind = ErrorKind.SESSION_EXPIRED
    default_status = 401


class InvalidStateError(AuthError):
    kind = ErrorKind.INVALID_STATE
    default_status = 400


class CallbackError(AuthError):
    kind = ErrorKind.CALLBACK_ERROR
    default_status = 400


class UnsupportedProviderError(AuthError):
    kind = ErrorKind.UNSUPPORTED_PROVIDER
    default_status = 400


class ProviderError(AuthError):
    kind = ErrorKind.PROVIDER_ERROR
    default_status = 500


class TokenExchangeError(AuthError):
    """Token endpoint failure. details["body"] holds the provider's raw response."""

    kind = ErrorKind.TOKEN_EXCHANGE_ERROR
    default_status = 500


class ProfileFetchError(AuthError):
    kind = ErrorKind.PROFILE_FETCH_ERROR
    default_status = 500


class TokenError(AuthError):
    """Wraps any failure of the code-for-profile exchange."""

    kind = ErrorKind.TOKEN_ERROR
    default_status = 500


class ProfileError(AuthError):
    """Wraps any failure of the post-exchange user upsert."""

    kind = ErrorKind.PROFILE_ERROR
    default_status = 500


# ---------------------------------------------------------------------------
# Browser-facing messages
# ---------------------------------------------------------------------------

_PROVIDER_LABELS: dict[str, str] = {"microsoft": "Microsoft", "github": "GitHub"}

GENERIC_LOGIN_FAILURE = "Authentication failed. Please try again."

_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.INVALID_STATE: "Authentication request validation failed. Please try again.",
    ErrorKind.CALLBACK_ERROR: "Invalid authorization response. Please try again.",
    ErrorKind.UNSUPPORTED_PROVIDER: "Unsupported sign-in provider.",
    ErrorKind.PROVIDER_ERROR: "Sign-in is not available right now. Please contact support.",
    ErrorKind.TOKEN_ERROR: "Authentication with {provider} failed. Please try again.",
    ErrorKind.TOKEN_EXCHANGE_ERROR: "Authentication with {provider} failed. Please try again.",
    ErrorKind.PROFILE_FETCH_ERROR: "Authentication with {provider} failed. Please try again.",
    ErrorKind.PROFILE_ERROR: "Failed to process your {provider} profile. Please try again.",
    ErrorKind.AUTHENTICATION_FAILED: "Could not start your session. Please try again.",
    ErrorKind.SESSION_EXPIRED: "Your session has expired. Please sign in again.",
}


def provider_label(provider: str | None) -> str:
    return _PROVIDER_LABELS.get(provider or "", "the provider")


def user_message(error: BaseException) -> str:
    """Return a short, browser-safe explanation for a failed login step."""
    if not isinstance(error, AuthError):
        return GENERIC_LOGIN_FAILURE
    template = _MESSAGES.get(error.kind, GENERIC_LOGIN_FAILURE)
    return template.format(provider=provider_label(error.provider))


PROVIDER_DENIED = "Sign-in with {provider} was cancelled or denied."


def provider_denied_message(provider: str | None) -> str:
    """Message for a callback where the provider itself reported an error (e.g. access_denied)."""
    return PROVIDER_DENIED.format(provider=provider_label(provider))


def known_messages() -> set[str]:
    """Every string user_message() or provider_denied_message() can produce.

    The login page renders nothing else [M3].
    """
    messages = {GENERIC_LOGIN_FAILURE}
    for template in (*_MESSAGES.values(), PROVIDER_DENIED):
        for provider in (*_PROVIDER_LABELS, None):
            messages.add(template.format(provider=provider_label(provider)))
    return messages
