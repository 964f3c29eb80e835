"""
core/config.py -- Centralized gateway configuration via pydantic-settings.

All environment variable reads for subgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. upstream_api_url -> UPSTREAM_API_URL).

  @model_validator(mode="after"): DEBUG-conditional SECRET_KEY policy. Dev
      mode generates a key with a warning, production refuses to start.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. A changed key
  invalidates every outstanding session token; there is no rotation procedure.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/ or proxy/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("subgate.config")

_DATA_DIR = Path(__file__).resolve().parent.parent / "data"


class Settings(BaseSettings):
    """Gateway settings loaded from environment variables and .env file.

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
    # Empty string is the "not configured" sentinel, resolved by the validator.
    secret_key: str = ""
    database_url: str = f"sqlite:///{_DATA_DIR / 'gateway.db'}"
    allowed_hosts: list[str] = Field(default_factory=lambda: ["*"])
    # Browser origins allowed to call /api/v1 cross-site. Empty = CORS off.
    cors_origins: list[str] = Field(default_factory=list)
    # Peers whose X-Forwarded-For is trusted as the client address. The login
    # lockout and rate limit key on that address, so only name real proxies.
    forwarded_allow_ips: str = "127.0.0.1"

    # ------------------------------------------------------------------
    # Upstream engine
    # ------------------------------------------------------------------

    upstream_api_url: str = "http://sub-store-core:3000"
    upstream_ui_url: str = "http://sub-store-core:3001"
    proxy_timeout_seconds: float = 30.0

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # Session tokens embed role and secret path; this TTL bounds how long
    # those snapshots may lag behind the store.
    token_expire_seconds: int = 86400
    password_min_length: int = 8
    default_admin_username: str = "admin"
    default_admin_password: str = "admin"

    # ------------------------------------------------------------------
    # Login lockout and rate limiting
    # ------------------------------------------------------------------

    login_max_failures: int = 5
    login_lockout_seconds: int = 900
    login_guard_max_entries: int = 10000
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Sync scheduler
    # ------------------------------------------------------------------

    sync_state_path: str = str(_DATA_DIR / "sync_state.json")
    default_sync_interval_hours: int = 24
    sync_tick_seconds: int = 3600
    # 0 disables the limit.
    sync_batch_size: int = 0
    sync_time_budget_seconds: float = 0.0
    sync_token_ttl_seconds: int = 300

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    # Directory holding the prebuilt dashboard bundle. Empty = not mounted.
    dashboard_dir: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.default_sync_interval_hours < 1:
            raise ValueError("DEFAULT_SYNC_INTERVAL_HOURS must be a positive integer.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
