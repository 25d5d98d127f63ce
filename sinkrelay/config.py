"""Runtime configuration — env-driven via pydantic-settings.

All settings can be overridden via SINKRELAY_* environment variables or a
.env file in the working directory.

Examples
--------
Override via environment::

    export SINKRELAY_LOG_LEVEL=DEBUG
    export SINKRELAY_RETRY_MAX_ATTEMPTS=8
    export SINKRELAY_OBJECT_STORE_PATH=/data/objects

Or via .env file::

    SINKRELAY_ENVIRONMENT=production
    SINKRELAY_SMTP_HOST=mail.internal
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from sinkrelay.routing.retry import RetryPolicy


class RelayConfig(BaseSettings):
    """Delivery subsystem settings with environment variable overrides."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SINKRELAY_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"

    # Buffering ceilings
    max_pending_records_per_key: int = Field(default=10_000, ge=1)
    max_open_batches: int = Field(default=10_000, ge=1)

    # Deadline timer: longest sleep between deadline checks
    timer_tick_ms: int = Field(default=1_000, ge=10)

    # Retry / backoff
    retry_max_attempts: int = Field(default=5, ge=1)
    retry_base_delay_ms: int = Field(default=500, ge=0)
    retry_max_delay_ms: int = Field(default=30_000, ge=0)
    retry_multiplier: float = Field(default=2.0, ge=1.0)

    # HTTP sink
    http_timeout_ms: int = Field(default=10_000, gt=0)

    # Local storage
    object_store_path: Path = Path(".sinkrelay/objects")
    tabular_path: Path = Path(".sinkrelay/tables")
    delivery_log_path: Path = Path(".sinkrelay/delivery-log.db")
    delivery_log_enabled: bool = True

    # Email sink (SMTP)
    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_sender: str = "sinkrelay@localhost"
    smtp_use_tls: bool = False
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_timeout_seconds: float = 10.0

    # Push channels
    push_queue_size: int = Field(default=1_000, ge=1)

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"

    def retry_policy(self) -> RetryPolicy:
        """Build the worker's retry policy from these settings."""
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay_ms=self.retry_base_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            multiplier=self.retry_multiplier,
        )


# Module-level singleton — import as `from sinkrelay.config import config`
config = RelayConfig()
