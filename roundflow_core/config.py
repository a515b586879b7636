"""Engine configuration loaded from the environment (``ROUNDFLOW_*``) or ``.env``."""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Backend
    api_base_url: str = "http://localhost:8000"
    participant_token: str = ""
    bearer_token: str = ""
    fetch_timeout_seconds: float = Field(15.0, gt=0)

    # Event times are wall-clock times in this zone
    timezone: str = "UTC"

    # Cadences
    poll_interval_seconds: float = Field(5.0, gt=0)
    lifecycle_interval_seconds: float = Field(60.0, gt=0)
    selector_tick_seconds: float = Field(1.0, gt=0)

    # Optimistic write protection
    confirm_suppression_seconds: float = Field(20.0, ge=0)
    unregister_suppression_seconds: float = Field(15.0, ge=0)

    # Durable markers, simulated clock offset and dashboard cache
    storage_url: str = "sqlite://"
    marker_retention_days: Optional[int] = Field(7, ge=0)

    # Round timing (minutes)
    confirmation_window_minutes: int = Field(5, ge=0)
    safety_window_minutes: int = Field(6, ge=0)
    walking_time_minutes: int = Field(3, ge=0)

    model_config = SettingsConfigDict(env_prefix="ROUNDFLOW_", env_file=".env", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
