"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Goalmap happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, remote_idp_pool_id -> REMOTE_IDP_POOL_ID).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates a signing key with a warning,
      production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. It signs every
  locally-issued token, so a short key weakens the whole local scheme.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a
  hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or tenancy/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("goalmap.config")

_THIRTY_DAYS = 30 * 24 * 60 * 60


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
    database_url: str = "sqlite:///./goalmap.db"

    # ------------------------------------------------------------------
    # Local token scheme
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = _THIRTY_DAYS

    # ------------------------------------------------------------------
    # Remote identity provider (optional -- empty string disables the scheme)
    # ------------------------------------------------------------------

    remote_idp_region: str = ""
    remote_idp_pool_id: str = ""
    remote_idp_client_id: str = ""
    remote_idp_issuer_template: str = "https://cognito-idp.{region}.amazonaws.com/{pool_id}"
    jwks_cache_seconds: int = 3600
    jwks_timeout_seconds: float = 5.0
    # after a failed fetch, report the key set unavailable without refetching
    jwks_failure_backoff_seconds: float = 30.0

    # ------------------------------------------------------------------
    # Tenancy
    # ------------------------------------------------------------------

    # max_age of the active_org_id / active_project_id cookies
    context_cookie_max_age: int = _THIRTY_DAYS
    # Internal principals allowed to proceed unscoped when RLS tagging fails.
    service_account_ids: list[str] = []

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    login_rate_limit: str = "10/minute"
    # slowapi storage backend, e.g. "redis://localhost:6379" when running several workers
    rate_limit_storage_uri: str = "memory://"
    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # Derived
    # ------------------------------------------------------------------

    @property
    def remote_configured(self) -> bool:
        """True only when every remote identity provider field is set."""
        return bool(self.remote_idp_region and self.remote_idp_pool_id and self.remote_idp_client_id)

    @property
    def remote_issuer(self) -> str:
        if not self.remote_configured:
            return ""
        return self.remote_idp_issuer_template.format(
            region=self.remote_idp_region,
            pool_id=self.remote_idp_pool_id,
        )

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Issued tokens will not survive a restart."
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


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
