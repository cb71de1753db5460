"""Application configuration loaded from environment variables / ``.env``."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # technician clients re-send their last reading this often when GPS is quiet
    heartbeat_interval_seconds: float = Field(default=15.0, gt=0)
    # city traffic on two wheelers
    average_speed_kmh: float = Field(default=25.0, gt=0)
    push_deep_link: str = "/field-jobs"

    sampler_high_accuracy: bool = True
    sampler_timeout_ms: int = Field(default=10_000, gt=0)
    sampler_maximum_age_ms: int = Field(default=0, ge=0)

    log_level: str = "INFO"
    log_json: bool = False

    model_config = SettingsConfigDict(
        env_prefix="FIELDSERVICE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def get_settings() -> Settings:
    """Build Settings from the environment."""
    return Settings()
