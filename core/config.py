"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for knowstack happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET).

  AuthConfig: a frozen dataclass derived from Settings once at startup. The
      auth components receive it at construction time and never read
      Settings (or the environment) themselves. Tests build an AuthConfig
      directly without touching the environment.

Security notes:
  [M6] JWT secrets shorter than 32 chars are rejected outright. HMAC-SHA256
       signing relies on key entropy -- a short key weakens every token.

  [M7] In production mode (DEBUG not set or false), a missing JWT secret is a
       hard startup failure. In DEBUG mode a random secret is generated and
       sessions do not survive a restart.

  The refresh secret must differ from the access secret, otherwise an access
  token could be replayed where a refresh token is expected.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("knowstack.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'knowstack_auth.db'}"

_MIN_SECRET_LENGTH = 32


@dataclass(frozen=True)
class AuthConfig:
    """Immutable snapshot of everything the auth subsystem needs.

    jwt_secret signs access tokens; jwt_refresh_secret signs refresh tokens.
    hash_secret is mixed into every password digest and may be empty.
    """

    jwt_secret: str
    jwt_refresh_secret: str
    jwt_issuer: str = "knowstack"
    jwt_audience: str = "knowstack"
    access_expires_minutes: int = 60
    refresh_expires_days: int = 7
    refresh_expires_days_remember: int = 30
    hash_secret: str = ""
    refresh_check_revoked: bool = False
    password_reset_expires_hours: int = 1
    frontend_url: str = "http://localhost:3000"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments (with DEBUG=true) without a real .env file.
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
    log_level: str = "INFO"
    database_url: str = _DEFAULT_DB_URL
    frontend_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The validator below
    # either generates a dev secret or raises, so callers never see "".
    jwt_secret: str = ""
    jwt_refresh_secret: str = ""
    jwt_issuer: str = "knowstack"
    jwt_audience: str = "knowstack"
    jwt_expires_in_min: int = 60
    jwt_refresh_expires_in_days: int = 7
    jwt_refresh_expires_in_days_remember: int = 30
    # Off by default: the refresh flow historically ignores the revoked flag.
    refresh_check_revoked: bool = False

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    hash_secret: str = ""
    password_reset_expires_in_hours: int = 1

    # ------------------------------------------------------------------
    # Google OAuth (empty client id means the provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_url: str = ""

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_jwt_secrets(self) -> "Settings":
        """Enforce the JWT secret policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
        Production mode: refuse to start if either secret is missing.
        Both modes: reject short secrets and identical access/refresh secrets.
        """
        for field_name in ("jwt_secret", "jwt_refresh_secret"):
            if getattr(self, field_name):
                continue
            if self.debug:
                setattr(self, field_name, secrets.token_hex(32))
                logger.warning(
                    "Using auto-generated %s. Sessions will not persist across restarts.", field_name.upper()
                )
            else:
                raise ValueError(
                    f"{field_name.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.jwt_secret) < _MIN_SECRET_LENGTH or len(self.jwt_refresh_secret) < _MIN_SECRET_LENGTH:
            raise ValueError(f"JWT secrets must be at least {_MIN_SECRET_LENGTH} characters.")
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_REFRESH_SECRET must differ from JWT_SECRET.")
        return self

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    def auth_config(self) -> AuthConfig:
        """Freeze the auth-relevant settings into an AuthConfig value."""
        return AuthConfig(
            jwt_secret=self.jwt_secret,
            jwt_refresh_secret=self.jwt_refresh_secret,
            jwt_issuer=self.jwt_issuer,
            jwt_audience=self.jwt_audience,
            access_expires_minutes=self.jwt_expires_in_min,
            refresh_expires_days=self.jwt_refresh_expires_in_days,
            refresh_expires_days_remember=self.jwt_refresh_expires_in_days_remember,
            hash_secret=self.hash_secret,
            refresh_check_revoked=self.refresh_check_revoked,
            password_reset_expires_hours=self.password_reset_expires_in_hours,
            frontend_url=self.frontend_url,
        )


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
