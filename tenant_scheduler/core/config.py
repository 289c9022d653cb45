# tenant_scheduler/core/config.py
from __future__ import annotations

from typing import Optional

import pytz
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Scheduler settings, loaded from environment variables and/or .env file.
    """

    # Environment settings
    APP_NAME: str = "Tenant Scheduler"
    APP_ENV: str = "development"

    # Database settings
    DATABASE_URL: str = "sqlite:///./scheduler.db"

    # Job defaults (applied when a job spec omits the field)
    DEFAULT_TIMEZONE: str = "UTC"
    DEFAULT_MAX_CONSECUTIVE_FAILURES: int = 3
    MAX_TIMEOUT_SECONDS: int = 24 * 3600

    # Scheduler runtime
    STALE_UPDATE_MAX_ATTEMPTS: int = 3
    STUCK_EXECUTION_SECONDS: int = 3600
    SHUTDOWN_GRACE_SECONDS: float = 30.0
    EXECUTION_HISTORY_DEFAULT_LIMIT: int = 50
    AUTO_START_SCHEDULER: bool = True

    # Observability settings
    SENTRY_DSN: Optional[str] = None

    @field_validator(
        "DEFAULT_MAX_CONSECUTIVE_FAILURES",
        "MAX_TIMEOUT_SECONDS",
        "STALE_UPDATE_MAX_ATTEMPTS",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("DEFAULT_TIMEZONE")
    @classmethod
    def _ensure_known_timezone(cls, value: str) -> str:
        try:
            pytz.timezone(value)
        except pytz.UnknownTimeZoneError as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


settings = Settings()
