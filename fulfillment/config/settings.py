"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./fulfillment.db",
        description="SQLAlchemy async connection URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")
    sqlite_busy_timeout: float = Field(
        default=30.0, description="Seconds a SQLite writer waits for the database lock"
    )

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")

    # Stripe Configuration
    stripe_secret_key: str | None = Field(default=None, description="Stripe secret API key")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    stripe_currency: str = Field(default="usd", description="Currency charged through Stripe")

    # Application Configuration
    app_name: str = Field(default="order-fulfillment", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=True, description="JSON log lines (console renderer when false)")
    debug: bool = Field(default=False, description="Debug mode")

    # Inventory
    reservation_ttl_minutes: int = Field(
        default=10, description="Minutes before a pending reservation expires"
    )
    reserve_max_attempts: int = Field(
        default=3, description="Attempts at the reserve/create-order transaction"
    )
    reserve_backoff_seconds: float = Field(
        default=0.05, description="Linear backoff unit between reserve attempts (seconds)"
    )

    # Payment Gateway
    gateway_timeout_seconds: float = Field(
        default=10.0, description="Timeout applied to a single gateway charge"
    )
    gateway_retry_max_attempts: int = Field(
        default=3, description="Max attempts for transient gateway errors"
    )

    # Compensation Tasks
    task_queue_name: str = Field(default="stock", description="Queue for reservation tasks")
    task_max_attempts: int = Field(default=3, description="Attempts per compensation task")
    task_backoff_seconds: List[float] = Field(
        default=[5.0, 15.0, 30.0], description="Backoff between compensation task attempts"
    )

    # Reservation Sweeper
    sweeper_interval_seconds: float = Field(
        default=300.0, description="Interval between reservation sweeps"
    )
    sweeper_lock_ttl_seconds: int = Field(
        default=240, description="Cluster-wide sweeper lock TTL (seconds)"
    )

    # Outbox
    outbox_batch_size: int = Field(default=100, description="Outbox events per batch")
    outbox_poll_interval_seconds: float = Field(default=1.0, description="Outbox polling interval")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FULFILLMENT_",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str | None) -> str | None:
        """Validate that a configured Stripe secret key has a known prefix."""
        if v is None:
            return v
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("task_backoff_seconds")
    @classmethod
    def validate_task_backoff(cls, v: List[float]) -> List[float]:
        """Require at least one non-negative backoff step."""
        if not v or any(step < 0 for step in v):
            raise ValueError("task_backoff_seconds must be a non-empty list of non-negative numbers")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        """Check if the configured database is SQLite."""
        return self.database_url.startswith("sqlite")

    @property
    def stripe_enabled(self) -> bool:
        """Check if a Stripe key is configured."""
        return self.stripe_secret_key is not None


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
