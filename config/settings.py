"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stale-while-revalidate defaults (seconds)
    deduping_interval: float = 2.0
    focus_throttle_interval: float = 5.0
    revalidate_on_focus: bool = True
    revalidate_on_reconnect: bool = True

    # Error retry
    should_retry_on_error: bool = True
    error_retry_count: int = 3
    error_retry_interval: float = 5.0

    # How long an entry with no subscribers survives (fast remount)
    cache_retain_seconds: float = 300.0

    # Admin metrics push channel
    auto_connect: bool = True
    fallback_to_polling: bool = True
    metrics_polling_interval: float = 15.0
    socket_reconnect_attempts: int = 10
    socket_reconnect_delay: float = 1.0
    socket_reconnect_delay_max: float = 5.0
    metrics_socket_url: str = "ws://127.0.0.1:8000/ws"
    heartbeat_interval: float = 30.0

    # REST backend used by the polling fallback
    api_base_url: str = "http://127.0.0.1:8000/api"
    api_token: Optional[str] = None
    http_timeout_seconds: int = 30

    # Metrics gateway
    gateway_host: str = "127.0.0.1"
    gateway_port: int = 8000
    gateway_push_interval: float = 5.0  # quickMetrics broadcast, 0 disables
    gateway_accept_connections: bool = True

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
