from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="WT_", case_sensitive=False)
    """Application runtime configuration."""

    app_name: str = "WorkTime"
    environment: str = "development"
    host: str = os.getenv("WT_HOST", "127.0.0.1")
    port: int = int(os.getenv("WT_PORT", "8080"))
    log_level: str = os.getenv("WT_LOG_LEVEL", "INFO")

    sqlite_path: Path = Path(os.getenv("WT_SQLITE_PATH", "./data/worktime.db"))

    timezone: str = os.getenv("TZ", "Europe/Berlin")

    default_employment_type: str = "employee"
    default_holiday_region: str = "de-by"
    default_weekly_hours: float = Field(default=40.0, gt=0)

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return str(value or "INFO").upper()

    @field_validator("default_holiday_region", mode="before")
    @classmethod
    def _lower_region(cls, value: str) -> str:
        return str(value or "").strip().lower()


settings = Settings()

# Ensure essential directories exist
settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
