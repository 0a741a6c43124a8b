# brokerlink/core/config.py
"""
Central configuration for the broker integration runtime.

Environment variables override defaults.
"""
from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings with sensible defaults."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    log_level: str = "INFO"

    # Config file paths (glob patterns)
    integrations_config_paths: list[str] = Field(
        default_factory=lambda: ["config/integrations.yaml"]
    )

    # Connection pool behaviour
    message_buffer_size: int = Field(
        default=1000,
        ge=1,
        description="Per-topic cap of the MQTT message buffer",
    )
    operation_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds allowed for a single broker operation",
    )
    kafka_consume_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Soft timeout of the one-shot Kafka message read",
    )
    discard_buffer_on_unsubscribe: bool = Field(
        default=True,
        description="Drop a topic's buffered messages when it is unsubscribed",
    )


settings = Settings()
