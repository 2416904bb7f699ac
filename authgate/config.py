"""
Application Configuration.

Pydantic Settings model for the authgate session core.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings
from pydantic import SecretStr, model_validator


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Supabase ---
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: SecretStr = SecretStr("")

    # --- Deployment ---
    ENVIRONMENT: Literal["development", "production", "test"] = "development"
    SITE_URL: str = "http://localhost:3000"

    # --- Profile store ---
    PROFILE_TABLE: str = "users"

    # --- Session lifecycle ---
    SESSION_VALIDITY_BUFFER_S: float = 30.0
    REFRESH_MARGIN_S: float = 300.0
    SIGNUP_COOLDOWN_S: float = 5.0

    # --- Session persistence ---
    SESSION_STORE_BACKEND: Literal["file", "encrypted"] = "file"
    SESSION_STORE_PATH: str = ".authgate/session.json"
    SESSION_STORE_DB_PATH: str = ".authgate/authgate_local.db"
    SESSION_STORE_MAX_AGE_DAYS: int = 30
    SESSION_SNAPSHOT_MAX_BYTES: int = 4096

    # --- Logging ---
    LOG_FILE: str = "authgate.log"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when critical configuration is empty.

        Pydantic silently falls back to defaults when ``.env`` is missing.
        This validator logs a warning so operators know the core is running
        with placeholder values.
        """
        _log = logging.getLogger("authgate.config")

        if not Path(".env").exists():
            _log.warning(
                "No .env file found; all configuration loaded from "
                "environment variables or defaults."
            )

        if not self.SUPABASE_URL:
            _log.warning(
                "SUPABASE_URL is empty: the identity provider and profile "
                "store are unreachable until it is configured."
            )

        return self

    @property
    def is_development(self) -> bool:
        """``True`` when verbose error diagnostics should be emitted."""
        return self.ENVIRONMENT == "development"

    @property
    def secure_storage(self) -> bool:
        """``True`` in production-like environments.

        Mirrors the ``Secure`` cookie flag: persisted session snapshots
        are written with owner-only permissions.
        """
        return self.ENVIRONMENT == "production"

    @property
    def reset_password_redirect(self) -> str:
        return f"{self.SITE_URL.rstrip('/')}/auth/reset-password/confirm"

    @property
    def verification_redirect(self) -> str:
        return f"{self.SITE_URL.rstrip('/')}/auth/callback"


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    On first call, creates an ``AppConfig`` instance (reading from ``.env``).
    Subsequent calls return the same instance.  Uses a check-lock-check
    pattern to avoid the lock overhead on the fast path while remaining
    thread-safe during first initialisation.

    Prefer direct constructor injection of ``AppConfig`` in new code;
    this factory exists for modules that need configuration before the
    composition root has run (e.g. the logger).
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
