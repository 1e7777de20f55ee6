"""
IoTV Monitor - Configuration
All settings loaded from environment variables
"""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database (PostgreSQL in production: postgresql+asyncpg://...)
    database_url: str = "sqlite+aiosqlite:///./iotv.db"
    create_tables: bool = False  # create schema on startup instead of alembic

    # MQTT
    mqtt_broker: str = "localhost"
    mqtt_port: int = 1883
    mqtt_topic_prefix: str = "devices"

    # Liveness
    default_heartbeat_interval: int = 60  # seconds
    sweep_interval_seconds: float = 60.0
    grace_multiplier: float = 2.0
    max_clock_skew_seconds: float = 300.0  # heartbeats further in the future are rejected

    # Logging
    log_level: str = "INFO"

    @property
    def heartbeat_topic(self) -> str:
        """Wildcard topic for heartbeats from all devices."""
        return f"{self.mqtt_topic_prefix}/+/heartbeat"

    def commands_topic(self, device_id: str) -> str:
        return f"{self.mqtt_topic_prefix}/{device_id}/commands"

    class Config:
        env_file = ".env"  # Fallback for local development
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
