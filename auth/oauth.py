"""
auth/oauth.py -- OAuth2 authorization-code client for Microsoft and GitHub.

Uses authlib's requests-based OAuth2Session for authorization URL
construction and bearer-token requests. Each exchange opens its own session
and closes it afterwards; nothing is cached between logins.

Exchange per provider:
  1. POST code + client credentials + redirect URI to the token endpoint.
     Non-2xx (or a 2xx body without access_token -- GitHub reports bad codes
     with 200) raises TokenExchangeError carrying the provider's raw body.
  2. GET the profile endpoint with the bearer token. Non-2xx raises
     ProfileFetchError.
  3. GitHub only: GET /user/emails. Non-2xx degrades to no email; the user
     record validation rejects the login later if no address is found.

Network failures (timeout, DNS, TLS, connection reset) and undecodable JSON
are wrapped into the same two error types, so the auth service handles one
failure family. Every request carries Settings.oauth_timeout_seconds; there
are no retries -- a failed exchange ends the login attempt.

The raw bodies are kept in error details for logs only. They never reach
the browser (see auth.errors.user_message).

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

import requests
from authlib.integrations.requests_client import OAuth2Session

from auth.errors import ProfileFetchError, TokenExchangeError, UnsupportedProviderError
from auth.models import OAuthProfile, Provider
from auth.profiles import normalize_profile
from core.config import Settings, get_settings

logger = logging.getLogger("ssogate.auth.oauth")

# Raw provider error bodies are truncated before they go into error details.
_MAX_ERROR_BODY = 2000


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderEndpoints:
    name: str
    label: str
    authorize_url: str
    token_url: str
    profile_url: str
    scope: str
    emails_url: str | None = None
    authorize_params: dict = field(default_factory=dict)
    api_headers: dict = field(default_factory=dict)


_MS_LOGIN = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0"


def provider_endpoints(provider: str, settings: Settings) -> ProviderEndpoints:
    """Return the fixed endpoints and scopes for a provider.

    Raises UnsupportedProviderError for anything but microsoft/github.
    """
    if provider == Provider.microsoft.value:
        base = _MS_LOGIN.format(tenant=settings.microsoft_tenant)
        return ProviderEndpoints(
            name=provider,
            label="Microsoft",
            authorize_url=f"{base}/authorize",
            token_url=f"{base}/token",  # noqa: S106 -- URL, not a password
            profile_url="https://graph.microsoft.com/v1.0/me",
            scope="openid profile email",
            authorize_params={"response_mode": "query"},
        )
    if provider == Provider.github.value:
        return ProviderEndpoints(
            name=provider,
            label="GitHub",
            authorize_url="https://github.com/login/oauth/authorize",
            token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            profile_url="https://api.github.com/user",
            emails_url="https://api.github.com/user/emails",
            scope="user:email",
            api_headers={"Accept": "application/vnd.github+json", "User-Agent": "ssogate"},
        )
    raise UnsupportedProviderError(f"Unsupported OAuth provider: {provider!r}", details={"provider": provider})


def _credentials(provider: str, settings: Settings) -> tuple[str, str]:
    if provider == Provider.microsoft.value:
        return settings.microsoft_client_id, settings.microsoft_client_secret
    return settings.github_client_id, settings.github_client_secret


def _body(resp) -> str:
    try:
        return (resp.text or "")[:_MAX_ERROR_BODY]
    except (AttributeError, UnicodeDecodeError, TypeError):
        return ""


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class OAuthClient:
    """Authorization URL builder and code-for-profile exchanger.

    Args:
        settings:        Provider credentials, tenant, base URL and timeout.
                         Defaults to get_settings().
        session_factory: Callable returning an OAuth2Session-compatible
                         object. Tests pass a factory returning fakes.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: Callable[..., OAuth2Session] = OAuth2Session,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def missing_credentials(self) -> list[str]:
        """Env var names of unset client ids/secrets (empty list = fully configured)."""
        return self.settings.missing_oauth_settings()

    def enabled_providers(self) -> list[dict]:
        """Return {"name", "label"} for every provider with both credentials set."""
        enabled: list[dict] = []
        for provider in Provider:
            client_id, client_secret = _credentials(provider.value, self.settings)
            if client_id and client_secret:
                enabled.append({"name": provider.value, "label": provider_endpoints(provider.value, self.settings).label})
        return enabled

    def _open(self, provider: str) -> tuple[ProviderEndpoints, OAuth2Session]:
        endpoints = provider_endpoints(provider, self.settings)
        client_id, client_secret = _credentials(provider, self.settings)
        session = self._session_factory(
            client_id=client_id,
            client_secret=client_secret,
            scope=endpoints.scope,
            redirect_uri=self.settings.redirect_uri(provider),
        )
        return endpoints, session

    # ------------------------------------------------------------------
    # Step 0: authorization redirect
    # ------------------------------------------------------------------

    def authorization_url(self, provider: str, state: str) -> str:
        """Return the provider's authorize URL with client id, redirect URI, scope and state."""
        endpoints, session = self._open(provider)
        try:
            url, _ = session.create_authorization_url(
                endpoints.authorize_url, state=state, **endpoints.authorize_params
            )
        finally:
            session.close()
        return url

    # ------------------------------------------------------------------
    # Steps 1-3: code -> token -> profile
    # ------------------------------------------------------------------

    def fetch_profile(self, provider: str, code: str) -> OAuthProfile:
        """Exchange an authorization code for a normalized provider profile.

        Raises:
            TokenExchangeError: token endpoint failed or was unreachable.
            ProfileFetchError:  profile/emails endpoint failed or was unreachable.
        """
        endpoints, session = self._open(provider)
        try:
            access_token = self._exchange_code(session, endpoints, code)
            session.token = {"access_token": access_token, "token_type": "bearer"}
            payload = self._get_json(session, endpoints, endpoints.profile_url)
            emails = None
            if endpoints.emails_url:
                emails = self._get_emails(session, endpoints)
        finally:
            session.close()
        return normalize_profile(provider, payload, emails)

    def _exchange_code(self, session: OAuth2Session, endpoints: ProviderEndpoints, code: str) -> str:
        client_id, client_secret = _credentials(endpoints.name, self.settings)
        data = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.settings.redirect_uri(endpoints.name),
        }
        try:
            resp = session.post(
                endpoints.token_url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self.settings.oauth_timeout_seconds,
                withhold_token=True,
            )
        except requests.RequestException as exc:
            raise TokenExchangeError(
                f"Token request to {endpoints.label} failed: {exc}",
                provider=endpoints.name,
                details={"error": str(exc)},
            ) from exc

        if not resp.ok:
            raise TokenExchangeError(
                f"Token exchange failed with HTTP {resp.status_code}",
                provider=endpoints.name,
                details={"status": resp.status_code, "body": _body(resp)},
            )
        try:
            token = resp.json()
        except ValueError as exc:
            raise TokenExchangeError(
                "Token endpoint returned a non-JSON body",
                provider=endpoints.name,
                details={"status": resp.status_code, "body": _body(resp)},
            ) from exc

        access_token = token.get("access_token") if isinstance(token, dict) else None
        if not access_token:
            raise TokenExchangeError(
                "Token response did not contain an access token",
                provider=endpoints.name,
                details={"status": resp.status_code, "body": _body(resp)},
            )
        return access_token

    def _get_json(self, session: OAuth2Session, endpoints: ProviderEndpoints, url: str):
        try:
            resp = session.get(url, headers=endpoints.api_headers, timeout=self.settings.oauth_timeout_seconds)
        except requests.RequestException as exc:
            raise ProfileFetchError(
                f"Profile request to {endpoints.label} failed: {exc}",
                provider=endpoints.name,
                details={"url": url, "error": str(exc)},
            ) from exc
        if not resp.ok:
            raise ProfileFetchError(
                f"Profile fetch failed with HTTP {resp.status_code}",
                provider=endpoints.name,
                details={"url": url, "status": resp.status_code, "body": _body(resp)},
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise ProfileFetchError(
                "Profile endpoint returned a non-JSON body",
                provider=endpoints.name,
                details={"url": url, "status": resp.status_code, "body": _body(resp)},
            ) from exc

    def _get_emails(self, session: OAuth2Session, endpoints: ProviderEndpoints) -> list:
        """GitHub GET /user/emails. A refused request means "no email", not a failed login step."""
        try:
            resp = session.get(
                endpoints.emails_url, headers=endpoints.api_headers, timeout=self.settings.oauth_timeout_seconds
            )
        except requests.RequestException as exc:
            raise ProfileFetchError(
                f"Email request to {endpoints.label} failed: {exc}",
                provider=endpoints.name,
                details={"url": endpoints.emails_url, "error": str(exc)},
            ) from exc
        if not resp.ok:
            logger.warning("%s emails endpoint returned HTTP %s; continuing without email", endpoints.label, resp.status_code)
            return []
        try:
            emails = resp.json()
        except ValueError:
            logger.warning("%s emails endpoint returned a non-JSON body; continuing without email", endpoints.label)
            return []
        return emails if isinstance(emails, list) else []
