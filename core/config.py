"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for OrgTree happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY).

  @model_validator(mode="after"): Enforces the SECRET_KEY policy once all
      fields are resolved.

Security notes:
  [S1] There is no default signing secret. In production mode a missing
       SECRET_KEY is a startup failure. In DEBUG mode the key stays empty and
       the access token codec rejects every token (fail closed) -- a warning
       is logged so the developer knows why every request is 401.

  [S2] Keys shorter than 32 characters are rejected. HMAC-SHA256 for both
       JWT and CSRF signing relies on key entropy.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or audit/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("orgtree.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'orgtree.db'}"


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
    # Empty string is the sentinel for "not configured" [S1].
    secret_key: str = ""
    # Falls back to secret_key when empty.
    csrf_secret: str = ""

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # SQLite busy timeout -- upper bound on how long a request waits for the store.
    db_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 900
    refresh_token_expire_days: int = 7
    revoked_token_retention_days: int = 7
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # List env vars are JSON, e.g. ALLOWED_HOSTS='["api.example.com"]'
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    audit_retention_days: int = 365
    cleanup_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Rate limiting and password policy
    # ------------------------------------------------------------------

    login_rate_limit: str = "5/15minutes"
    refresh_rate_limit: str = "10/minute"
    min_password_length: int = 12

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [S1][S2]."""
        if not self.secret_key:
            if not self.debug:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            logger.warning("SECRET_KEY is not set. Every access token will be rejected until it is configured.")
        elif len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.csrf_secret and len(self.csrf_secret) < 32:
            raise ValueError("CSRF_SECRET must be at least 32 characters.")
        return self

    @property
    def effective_csrf_secret(self) -> str:
        return self.csrf_secret or self.secret_key


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
