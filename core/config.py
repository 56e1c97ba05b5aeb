"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for PulseHours happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. DEBUG decides both the SECRET_KEY policy
      and the default for SECURE_COOKIES.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session keys are
       stored as HMAC-SHA256(SECRET_KEY, session_id) -- a short key weakens that.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure, and the session cookie is marked Secure unless
       SECURE_COOKIES=false is set explicitly.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or auth/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("pulsehours.config")


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
    # Empty string means the SQLite file next to the package (core/database.py).
    database_url: str = ""
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    # None means "derive from DEBUG": Secure in production, plain in dev.
    secure_cookies: Optional[bool] = None
    session_cookie_name: str = "pulsehours_session"
    session_idle_timeout_seconds: int = 24 * 60 * 60
    session_rotation_seconds: int = 5 * 60
    session_tombstone_seconds: int = 5 * 60

    # ------------------------------------------------------------------
    # Login throttling
    # ------------------------------------------------------------------

    login_max_attempts: int = 5
    login_window_seconds: int = 15 * 60
    login_attempt_retention_seconds: int = 24 * 60 * 60
    login_attempt_prune_probability: float = 0.01
    # Coarse per-IP request cap on POST /login (slowapi), in front of the
    # attempt-log based limiter.
    login_rate_limit: str = "20/minute"

    # ------------------------------------------------------------------
    # Housekeeping and navigation
    # ------------------------------------------------------------------

    housekeeping_interval_seconds: int = 60 * 60
    admin_landing_path: str = "/admin"
    user_landing_path: str = "/hours"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
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
        return self

    @model_validator(mode="after")
    def default_secure_cookies(self) -> "Settings":
        """Mark the session cookie Secure by default outside DEBUG mode."""
        if self.secure_cookies is None:
            self.secure_cookies = not self.debug
        elif not self.secure_cookies and not self.debug:
            logger.warning("SECURE_COOKIES=false in production mode -- session cookie will be sent over plain HTTP")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
