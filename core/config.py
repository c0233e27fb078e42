"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the gateway happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. github_client_id -> GITHUB_CLIENT_ID).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode (DEBUG=true) tolerates missing secrets with a warning;
      production mode refuses to start without them.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It signs the
       short-lived cookie that carries the OAuth state between the redirect
       to the provider and the callback.

  [M7] In production mode a missing SECRET_KEY or a missing OAuth client
       id/secret is a hard startup failure, never a per-request one.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("ssogate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'ssogate.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    base_url: str = "http://localhost:3000"
    database_url: str = _DEFAULT_DB_URL
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_duration_seconds: int = 24 * 60 * 60
    session_cleanup_interval_seconds: int = 60 * 60
    # Lifetime of the signed cookie holding the OAuth state during one login
    # round-trip. Kept short: the state is only needed between redirect and callback.
    oauth_state_max_age_seconds: int = 600

    # ------------------------------------------------------------------
    # OAuth providers
    # ------------------------------------------------------------------

    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_tenant: str = "common"  # personal + work/school accounts
    github_client_id: str = ""
    github_client_secret: str = ""

    oauth_timeout_seconds: float = 10.0
    # False restores the lenient behaviour: state is only compared when both
    # the query param and the stored value are present.
    require_oauth_state: bool = True

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    def redirect_uri(self, provider: str) -> str:
        """Return the registered callback URL for a provider."""
        return f"{self.base_url.rstrip('/')}/auth/callback/{provider}"

    def missing_oauth_settings(self) -> list[str]:
        """Return the env var names of unset OAuth credentials."""
        required = {
            "MICROSOFT_CLIENT_ID": self.microsoft_client_id,
            "MICROSOFT_CLIENT_SECRET": self.microsoft_client_secret,
            "GITHUB_CLIENT_ID": self.github_client_id,
            "GITHUB_CLIENT_SECRET": self.github_client_secret,
        }
        return [name for name, value in required.items() if not value]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            In-flight logins will not survive a restart -- acceptable locally.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Pending logins will not survive a restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_oauth_credentials(self) -> "Settings":
        """Refuse to start in production with incomplete provider credentials.

        Dev mode only warns; the auth service then rejects callbacks with a
        provider error until the credentials are supplied.
        """
        missing = self.missing_oauth_settings()
        if missing:
            if self.debug:
                logger.warning("OAuth credentials not configured: %s", ", ".join(missing))
            else:
                raise ValueError(f"Missing required environment variables: {', '.join(missing)}")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
