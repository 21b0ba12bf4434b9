"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SmartVal happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used to enforce the SECRET_KEY policy.

Security notes:
  SECRET_KEY is mandatory in every mode. It signs the session cookie; a
       process without it has no defined security posture, so Settings()
       raises and the process refuses to start. DEBUG only changes log level.

  SECRET_KEY shorter than 32 chars is rejected outright. HMAC-SHA256
       relies on key entropy -- a short key weakens every cookie signature.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or projects/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("smartval.config")

# Absolute, so the API and the CLI open the same file whatever the working directory.
DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'smartval.db'}"


class StoreSettings(BaseSettings):
    """Where the shared store lives. The only settings the admin CLI needs.

    Reads DATABASE_URL from the environment or .env exactly as Settings does,
    without requiring SECRET_KEY.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = DEFAULT_DB_URL


class Settings(StoreSettings):
    """Application settings loaded from environment variables and .env file.

    Every field except secret_key has a default. The model_validator enforces
    the signing-secret rule at startup.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `secret_key` reads from SECRET_KEY, `debug` reads from DEBUG.
    """

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured"; the validator raises.
    secret_key: str = ""
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "testserver", "*.localhost"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_cookie_name: str = "session"
    session_ttl_seconds: int = 7 * 24 * 3600

    # ------------------------------------------------------------------
    # Rate limiting and lockout
    # ------------------------------------------------------------------

    login_rate_limit: int = 10
    login_rate_window_seconds: int = 60
    register_rate_limit: int = 5
    register_rate_window_seconds: int = 3600
    max_login_failures: int = 5
    lockout_seconds: int = 15 * 60

    # ------------------------------------------------------------------
    # Edge guard
    # ------------------------------------------------------------------

    edge_protected_prefixes: list[str] = ["/projects", "/settings", "/admin"]
    edge_public_paths: list[str] = ["/login", "/register", "/forgot-password", "/api/v1/auth"]
    login_path: str = "/login"

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    purge_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Refuse to build settings without a usable signing secret."""
        if not self.secret_key:
            raise ValueError(
                "SECRET_KEY is required. "
                "Set SECRET_KEY in your environment or .env file "
                '(e.g. python -c "import secrets; print(secrets.token_hex(32))").'
            )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.max_login_failures < 1:
            raise ValueError("MAX_LOGIN_FAILURES must be at least 1.")
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


def get_database_url() -> str:
    """Resolve DATABASE_URL the way the API does, for tools that run without SECRET_KEY."""
    return StoreSettings().database_url
