"""Application configuration."""

import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    supabase_url: str
    supabase_service_key: str
    admin_token: str
    environment: str = _ENVIRONMENT
    sweeper_interval_seconds: float = 300.0
    feed_queue_size: int = 256
    feed_heartbeat_seconds: float = 15.0
    code_max_attempts: int = 8
    log_level: str = "INFO"
    device_id_path: Path = Path.home() / ".peak_tracker" / "device_id"

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )
