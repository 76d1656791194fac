"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the identity service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, lockout_minutes -> LOCKOUT_MINUTES).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode generates a SECRET_KEY with a warning, production mode
      refuses to start without one.

Security notes:
  SECRET_KEY signs session tokens and keys the HMAC used to store reset
  tokens. Keys shorter than 32 chars are rejected outright.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
audit/ or mail/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("restaurant.config")

_DATA_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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

    auth_db_url: str = f"sqlite:///{_DATA_DIR / 'auth' / 'restaurant_identity.db'}"
    audit_db_url: str = f"sqlite:///{_DATA_DIR / 'audit' / 'restaurant_audit.db'}"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 8 * 3600

    # ------------------------------------------------------------------
    # Lockout (0 attempts disables lockout)
    # ------------------------------------------------------------------

    lockout_max_attempts: int = 5
    lockout_minutes: int = 5

    # ------------------------------------------------------------------
    # Password policy
    # ------------------------------------------------------------------

    password_min_length: int = 6
    password_require_digit: bool = True
    password_require_lowercase: bool = True
    password_require_uppercase: bool = True
    password_require_non_alphanumeric: bool = True
    # Retry a failed direct password change through the reset-token path.
    password_change_fallback: bool = True

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    reset_token_expire_seconds: int = 24 * 3600
    reset_password_url: str = "http://localhost:8000/reset-password"

    # ------------------------------------------------------------------
    # Mail (empty smtp_host disables delivery)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_tls: bool = True
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_timeout_seconds: int = 10
    mail_from: str = ""
    mail_from_name: str = "Restaurant"

    # ------------------------------------------------------------------
    # Registration / HTTP
    # ------------------------------------------------------------------

    default_country: str = "België"
    login_rate_limit: str = "10/minute"
    reset_rate_limit: str = "5/hour"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions and outstanding reset links will not survive a restart.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.lockout_max_attempts < 0 or self.lockout_minutes < 0:
            raise ValueError("Lockout settings must not be negative.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
