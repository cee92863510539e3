"""Application settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "rondaguard_api"
    app_env: str = "dev"
    log_level: str = "INFO"
    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str = ""
    tick_interval_s: float = Field(default=1.0, gt=0.0)
    signature_width: int = Field(default=600, ge=1)
    signature_height: int = Field(default=150, ge=1)
    signature_line_width: int = Field(default=2, ge=1)
    photo_read_workers: int = Field(default=4, ge=1)
    report_timezone: str = "UTC"

    model_config = SettingsConfigDict(
        env_prefix="RONDAGUARD_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
