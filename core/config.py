"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Inkwell Auth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, access_token_ttl -> ACCESS_TOKEN_TTL).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode generates a SECRET_KEY with a warning, production
      mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. Token signatures and
  refresh-record keys are both HMAC-SHA256 under this key.

  The refresh TTL must exceed the access TTL, otherwise a refresh token would
  die before the access token it is meant to renew.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("inkwell.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'inkwell_auth.db'}"


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
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_ttl: int = 15 * 60
    refresh_token_ttl: int = 7 * 24 * 60 * 60
    # False: a refresh token stays redeemable until expiry or revocation.
    # True: every redemption issues a new refresh token and revokes the old one.
    rotate_refresh_tokens: bool = False

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_cookie_name: str = "access_token"

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------

    auth_db_url: str = _DEFAULT_DB_URL
    store_timeout_seconds: float = 5.0
    cleanup_interval_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Rate limiting / registration
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    register_rate_limit: str = "5/minute"
    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive restart.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
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
    def validate_token_ttls(self) -> "Settings":
        if self.access_token_ttl <= 0 or self.refresh_token_ttl <= 0:
            raise ValueError("Token TTLs must be positive.")
        if self.refresh_token_ttl <= self.access_token_ttl:
            raise ValueError("REFRESH_TOKEN_TTL must be longer than ACCESS_TOKEN_TTL.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
