"""
auth/service.py -- Login orchestration: initiate, callback, session lifecycle.

AuthService ties the OAuth client, the user store and the session store
together. Routes talk to this class only; they never call a store directly
for anything on the login path.

Per-attempt state machine:
  Unauthenticated -> initiate() -> AwaitingProviderRedirect
  provider redirect back        -> AwaitingCallback
  handle_callback() + create_session() -> Authenticated
  destroy_session(), or any error      -> Unauthenticated

Gate:
  initialize() must succeed before callbacks, session creation or session
  destruction are accepted. It refuses to mark the service ready while any
  provider credential is missing. validate_session() on an uninitialized
  service simply reports "no user".

Security:
  [H1] Callback state is compared in constant time (auth.tokens.validate_state).
       With require_oauth_state=True (default) a missing state on either side
       is a failure; with False only a present-but-different pair fails.
  [H2] The code exchange happens only after the code and state checks pass, so
       a forged callback never reaches the provider.
  Errors raised from handle_callback always carry the provider tag, so
  user_message() can name the provider without the route passing it around.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from datetime import timedelta

from auth.errors import (
    AuthenticationFailed,
    AuthError,
    CallbackError,
    InvalidStateError,
    ProfileError,
    ProviderError,
    TokenError,
    UnsupportedProviderError,
    ValidationError,
)
from auth.models import OAuthProfile, Provider, Session, User
from auth.oauth import OAuthClient
from auth.sessions import SessionStore
from auth.store import UserStore, clean_input
from auth.tokens import STATE_KEY, generate_state, redact, validate_state
from core.config import Settings, get_settings

logger = logging.getLogger("ssogate.auth.service")

_PROVIDERS = {p.value for p in Provider}


class AuthService:
    """Facade over OAuthClient, UserStore and SessionStore.

    Built once per process (lifespan or CLI) and shared through app.state.
    Holds no per-request state.
    """

    def __init__(
        self,
        user_store: UserStore,
        session_store: SessionStore,
        oauth_client: OAuthClient,
        settings: Settings | None = None,
    ) -> None:
        self.user_store = user_store
        self.session_store = session_store
        self.oauth_client = oauth_client
        self.settings = settings or get_settings()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def session_duration(self) -> timedelta:
        return timedelta(seconds=self.settings.session_duration_seconds)

    def initialize(self) -> None:
        """Check provider configuration and open the gate. Idempotent.

        Raises ProviderError naming the missing environment variables.
        """
        if self._initialized:
            return
        missing = self.oauth_client.missing_credentials()
        if missing:
            raise ProviderError(
                f"Missing required environment variables: {', '.join(missing)}",
                details={"missing": missing},
            )
        self._initialized = True
        logger.info("Auth service initialized")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise ProviderError("Auth service not initialized")

    @staticmethod
    def _check_provider(provider: str) -> None:
        if provider not in _PROVIDERS:
            raise UnsupportedProviderError(f"Unsupported OAuth provider: {provider!r}", details={"provider": provider})

    def enabled_providers(self) -> list[dict]:
        return self.oauth_client.enabled_providers()

    # ------------------------------------------------------------------
    # Login flow
    # ------------------------------------------------------------------

    def initiate(self, provider: str, context: MutableMapping) -> str:
        """Start a login: store a fresh state in context and return the provider URL.

        context is any mutable mapping that survives the round-trip to the
        provider (the signed Starlette session in the web layer).
        """
        self._check_provider(provider)
        state = generate_state()
        context[STATE_KEY] = state
        logger.debug("Initiating %s login (state %s)", provider, redact(state))
        return self.oauth_client.authorization_url(provider, state)

    def handle_callback(
        self,
        provider: str,
        code: str | None,
        request_state: str | None,
        stored_state: str | None,
    ) -> OAuthProfile:
        """Validate a provider callback, fetch the profile and upsert the user.

        Returns the canonical profile with id set to the local user id. No
        session is created here; call create_session() with that id.

        Raises (all tagged with provider):
            ProviderError:            service not initialized.
            UnsupportedProviderError: unknown provider.
            CallbackError:            missing code (400) or an unexpected failure (500).
            InvalidStateError:        state missing or mismatched.
            TokenError:               the code-for-profile exchange failed.
            ProfileError:             the user upsert failed.
        """
        try:
            self._require_initialized()
            self._check_provider(provider)

            if not code:
                raise CallbackError("Authorization code not received from provider")

            if request_state and stored_state:
                if not validate_state(request_state, stored_state):
                    raise InvalidStateError("OAuth state parameter mismatch")
            elif self.settings.require_oauth_state:
                raise InvalidStateError("OAuth state parameter missing")

            try:
                profile = self.oauth_client.fetch_profile(provider, code)
            except Exception as exc:  # noqa: BLE001 -- every exchange failure becomes TokenError
                raise TokenError(f"Failed to exchange code for profile: {exc}", details={"cause": repr(exc)}) from exc

            try:
                user = self._upsert_user(profile)
            except Exception as exc:  # noqa: BLE001 -- every upsert failure becomes ProfileError
                raise ProfileError(f"Failed to process user profile: {exc}", details={"cause": repr(exc)}) from exc

        except AuthError as exc:
            if exc.provider is None:
                exc.provider = provider
            raise
        except Exception as exc:
            logger.exception("Unexpected error handling %s callback", provider)
            raise CallbackError(
                "OAuth callback handling failed", status_code=500, provider=provider, details={"cause": repr(exc)}
            ) from exc

        logger.info("User %s authenticated via %s", user.id, provider)
        return OAuthProfile(id=user.id, username=user.username, email=user.email, provider=user.provider)

    def _upsert_user(self, profile: OAuthProfile) -> User:
        """Create the user on first login; refresh changed username/email afterwards."""
        existing = self.user_store.find_by_provider_id(profile.id, profile.provider)
        if existing is None:
            return self.user_store.create_user(profile)

        changes: dict[str, str] = {}
        username = clean_input(profile.username)
        email = clean_input(profile.email)
        if username != existing.username:
            changes["username"] = username
        if email != existing.email:
            changes["email"] = email
        if not changes:
            return existing
        logger.info("Refreshing %s for user %s from %s", ", ".join(sorted(changes)), existing.id, profile.provider)
        return self.user_store.update_user(existing.id, **changes)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, user_id: str) -> str:
        """Create a session for a user and return its id.

        Raises ValidationError for an empty id and AuthenticationFailed for
        any store failure (including an unknown user).
        """
        self._require_initialized()
        if not clean_input(user_id):
            raise ValidationError("User ID is required")
        try:
            session = self.session_store.create(user_id, self.session_duration)
        except AuthError as exc:
            logger.error("Failed to create session for user %s: %s", user_id, exc.message)
            raise AuthenticationFailed("Failed to create session", details={"cause": repr(exc)}) from exc
        return session.id

    def validate_session(self, session_id: str | None) -> User | None:
        """Resolve a session id to its user. Never raises; None means "not logged in"."""
        if not self._initialized or not session_id:
            return None
        try:
            found = self.session_store.get_session_with_user(session_id)
        except AuthError as exc:
            logger.error("Session validation failed for %s: %s", redact(session_id), exc.message)
            return None
        if found is None:
            return None
        return found[1]

    def destroy_session(self, session_id: str) -> None:
        """Log out. A session that is already gone counts as destroyed."""
        self._require_initialized()
        if not clean_input(session_id):
            raise ValidationError("Session ID is required")
        try:
            self.session_store.destroy(session_id)
        except AuthError as exc:
            logger.error("Failed to destroy session %s: %s", redact(session_id), exc.message)
            raise AuthenticationFailed("Failed to destroy session", details={"cause": repr(exc)}) from exc

    def refresh_session(self, session_id: str) -> Session | None:
        """Extend a valid session by the configured duration. None if it is not valid."""
        if not self._initialized or not session_id:
            return None
        return self.session_store.extend_session(session_id, self.session_duration)

    def list_sessions(self, user_id: str) -> list[Session]:
        return self.session_store.get_user_sessions(user_id)

    def revoke_all_sessions(self, user_id: str) -> int:
        """Sign a user out everywhere. Returns the number of sessions removed."""
        removed = self.session_store.destroy_all_user_sessions(user_id)
        logger.info("Revoked %d sessions for user %s", removed, user_id)
        return removed

    def sweep_expired_sessions(self) -> int:
        return self.session_store.cleanup()
