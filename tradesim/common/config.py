"""Application configuration via environment variables.

Uses pydantic-settings to load from .env file and environment variables.
All config is centralized here; modules should import `get_settings()`.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ─── App ───
    environment: str = "development"
    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]

    # ─── Producer event bus (Redis pub/sub) ───
    redis_url: str = "redis://localhost:6379/0"
    event_bus_enabled: bool = False

    # ─── Live layer ───
    heartbeat_interval_seconds: float = 30.0
    live_send_queue_size: int = 100
    live_replay_on_connect: bool = False

    # ─── Overlay client ───
    notification_log_size: int = 10
    reconnect_delay_seconds: float = 3.0

    # ─── Authorization ───
    admin_api_key: str | None = None
    participant_api_key: str | None = None

    # ─── Network allowlist ───
    allowed_cidr: str = ""  # comma-separated; empty allows every client
    seb_allowed_key: str | None = None


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings singleton.

    Uses lru_cache so Settings is only instantiated once.
    In tests, call `get_settings.cache_clear()` to reset.
    """
    return Settings()
