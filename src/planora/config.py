"""
Planora - Configuration and settings.

PlanoraSettings holds the Supabase connection and the tuning knobs of the
onboarding completion flow (timeouts, retry policy, leases, reconciliation).
Components take explicit policy objects built from these settings, so nothing
below the web/CLI layer reads the environment directly.
"""

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlanoraSettings(BaseSettings):
    """
    Application settings.

    Loaded from environment variables and `.env`.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Supabase
    supabase_url: str
    supabase_anon_key: str
    supabase_service_role_key: str

    # Application
    planora_env: Literal["development", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Commit trace logging (JSONL under commit_logs/, dev only)
    planora_log_commits: bool = False

    # Onboarding completion: timeouts
    onboarding_call_timeout_seconds: float = Field(default=5.0, gt=0)
    onboarding_commit_budget_seconds: float = Field(default=20.0, gt=0)

    # Onboarding completion: retry policy for transient store errors
    onboarding_retry_max_attempts: int = Field(default=4, ge=1, le=10)
    onboarding_retry_base_delay_seconds: float = Field(default=0.25, ge=0)
    onboarding_retry_max_delay_seconds: float = Field(default=2.0, ge=0)

    # Single-flight lease; must outlive the commit budget
    onboarding_lease_seconds: float = Field(default=45.0, gt=0)

    # Session refresh happens when the token expires within this window
    session_refresh_leeway_seconds: int = Field(default=60, ge=0)

    # Recovery buffer lifetime in the local cache
    onboarding_recovery_ttl_hours: int = Field(default=24, ge=1)

    # Background reconciliation of the identity store
    onboarding_reconcile_delay_seconds: float = Field(default=5.0, ge=0)
    onboarding_reconcile_max_passes: int = Field(default=3, ge=1)

    @property
    def is_development(self) -> bool:
        return self.planora_env == "development"

    @property
    def is_production(self) -> bool:
        return self.planora_env == "production"


@lru_cache
def get_settings() -> PlanoraSettings:
    """Get cached settings instance."""
    return PlanoraSettings()


class _SettingsProxy:
    """Lazy proxy for settings to avoid loading .env at import time."""

    _instance: PlanoraSettings | None = None

    def __getattr__(self, name: str):
        if self._instance is None:
            self._instance = get_settings()
        return getattr(self._instance, name)


settings = _SettingsProxy()


def configure_logging(level: str | None = None) -> None:
    """Apply the configured log level to the root logger."""
    logging.basicConfig(
        level=level or get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
