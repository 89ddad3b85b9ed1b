"""Configuration management."""

import logging

import structlog
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings from environment."""
    
    # Identity
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    
    # Storage
    store_backend: str = "redis"  # redis | memory
    redis_url: str = "redis://localhost:6379"
    store_max_retries: int = 5
    lock_record_retention_seconds: int = 86400  # expired records kept a day
    
    # Logging
    log_level: str = "INFO"
    
    # Locks
    lockable_modules: list[str] = ["daily_report", "staff_report", "order_report"]
    lock_lease_seconds: int = 300  # 5 minutes
    module_lease_seconds: dict[str, int] = {}
    refresh_after_expiry: bool = True
    
    # Client sessions
    heartbeat_interval_seconds: float = 150.0  # half a lease
    activity_debounce_seconds: float = 30.0
    channel_reconnect_delay_seconds: float = 2.0
    
    # Version history
    version_history_limit: int = 10
    
    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def lease_seconds_for(self, module_key: str) -> int:
        return self.module_lease_seconds.get(module_key, self.lock_lease_seconds)

    def heartbeat_interval_for(self, module_key: str) -> float:
        """Heartbeat for a module, never longer than half its lease."""
        return min(self.heartbeat_interval_seconds, self.lease_seconds_for(module_key) / 2)


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structlog for the service."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
    )
