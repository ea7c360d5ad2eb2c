"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AccountGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning, production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the HMAC used for backup codes and recovery tokens both rely on it.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  The signing key is read once at process start and handed to TokenIssuer.
  Rotating it means starting a new process; nothing mutates it at runtime.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("accountgate.config")

# Hard ceiling on bearer token lifetime (24 hours).
MAX_TOKEN_LIFETIME_SECONDS = 24 * 60 * 60

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'accountgate.db'}"


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
    database_url: str = _DEFAULT_DB_URL
    # Upper bound (seconds) on waiting for a store connection or lock.
    store_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = MAX_TOKEN_LIFETIME_SECONDS
    bcrypt_rounds: int = 12
    # Shared secret for POST /auth/register/admin. Empty disables the route.
    admin_secret: str = ""

    # ------------------------------------------------------------------
    # Second factor
    # ------------------------------------------------------------------

    totp_issuer: str = "AccountGate"
    backup_code_count: int = 8

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    password_reset_ttl_seconds: int = 60 * 60
    account_recovery_ttl_seconds: int = 24 * 60 * 60
    purge_interval_seconds: int = 60 * 60
    # Base URL of the frontend, used to build links in notifications.
    client_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"
    two_factor_rate_limit: str = "5/minute"
    recovery_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
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
    def validate_lifetimes(self) -> "Settings":
        """Bearer tokens never live longer than 24 hours; TTLs must be positive."""
        if not 0 < self.token_expire_seconds <= MAX_TOKEN_LIFETIME_SECONDS:
            raise ValueError(f"TOKEN_EXPIRE_SECONDS must be between 1 and {MAX_TOKEN_LIFETIME_SECONDS}.")
        if self.password_reset_ttl_seconds <= 0 or self.account_recovery_ttl_seconds <= 0:
            raise ValueError("Recovery token TTLs must be positive.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
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
