"""
Shared configuration management for the throttled listener service.
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="LISTENER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Observability
    metrics_enabled: bool = Field(default=False)
    metrics_port: int = Field(default=9090)


class ListenerConfig(BaseConfig):
    """Listener-specific configuration."""

    service_name: str = "listener"

    # Transport
    network: str = Field(default="tcp")
    address: str = Field(default="0.0.0.0:8080")

    # Admission throttle
    refill_interval_seconds: float = Field(default=0.1)
    bucket_size: int = Field(default=10)
    close_on_cancel: bool = Field(default=False)

    # Lifecycle
    shutdown_timeout_seconds: Optional[float] = Field(default=5.0)

    @field_validator("network")
    @classmethod
    def _check_network(cls, value: str) -> str:
        value = value.lower()
        if value not in ("tcp", "tcp4", "tcp6", "unix"):
            raise ValueError(f"unsupported network: {value}")
        return value

    @field_validator("refill_interval_seconds")
    @classmethod
    def _check_refill_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("refill interval must be positive")
        return value

    @field_validator("bucket_size")
    @classmethod
    def _check_bucket_size(cls, value: int) -> int:
        if value < 1:
            raise ValueError("bucket size must be at least 1")
        return value


def get_config(**overrides) -> ListenerConfig:
    """Get configuration for the listener service."""
    return ListenerConfig(**overrides)
