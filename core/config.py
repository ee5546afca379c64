"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for ClinicDesk happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or better, receive a Settings instance through its constructor.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. supabase_url -> SUPABASE_URL). Type coercion and validation are built in.

  @model_validator(mode="after"): cross-field validation after all fields are
      resolved. SECRET_KEY follows the DEBUG-conditional policy; the hosted
      backend requires both SUPABASE_URL and SUPABASE_ANON_KEY.

Security notes:
  SECRET_KEY signs the local backend's access and refresh tokens. Keys shorter
  than 32 characters are rejected. In production mode (DEBUG not set) a missing
  key is a hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, backend/, or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("clinicdesk.config")

_DATA_DIR = Path(__file__).resolve().parent.parent / "data"


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
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Backend selection
    #
    # "remote" talks to the hosted backend-as-a-service; "local" is the
    # prototype variant that keeps the same data model in a SQLite file.
    # ------------------------------------------------------------------

    backend: Literal["remote", "local"] = "local"
    supabase_url: str = ""
    supabase_anon_key: str = ""
    http_timeout_seconds: float = 10.0
    local_db_url: str = f"sqlite:///{_DATA_DIR / 'clinicdesk.db'}"
    bcrypt_rounds: int = 12

    # Local persisted state (profile cache, rate-limit counters, demo flag)
    cache_db_path: str = str(_DATA_DIR / "clinicdesk_cache.db")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_expire_seconds: int = 3600
    refresh_token_expire_seconds: int = 30 * 24 * 3600
    # validate_session() refreshes when less than this much lifetime remains
    refresh_threshold_seconds: int = 300
    # Wait between identity creation and profile insertion on register
    register_settle_seconds: float = 1.0
    # Lifetime of the httpOnly cookie that binds the session to one browser
    browser_session_seconds: int = 8 * 3600
    # Set true in production (HTTPS only)
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Client-side rate limiting
    # ------------------------------------------------------------------

    rate_limit_window_seconds: int = 15 * 60
    login_max_attempts: int = 5
    register_max_attempts: int = 3
    oauth_max_attempts: int = 3

    # ------------------------------------------------------------------
    # Demo mode
    # ------------------------------------------------------------------

    demo_mode_enabled: bool = True
    demo_email: str = "tajademeh@outlook.com"
    demo_password: str = "admin@123"

    # ------------------------------------------------------------------
    # OAuth (providers enabled on the hosted backend)
    # ------------------------------------------------------------------

    oauth_providers: list[str] = ["google"]
    oauth_redirect_url: str = "http://localhost:8000/api/v1/auth/oauth/callback"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:5173", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Local sessions will not survive restart.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
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
    def validate_remote_backend(self) -> "Settings":
        if self.backend == "remote" and not (self.supabase_url and self.supabase_anon_key):
            raise ValueError("BACKEND=remote requires SUPABASE_URL and SUPABASE_ANON_KEY.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
