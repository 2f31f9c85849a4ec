"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(..., description="Database URL (postgresql+asyncpg://...)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")

    # Application Configuration
    app_name: str = Field(default="storebot-engine", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")

    # Chat transport
    bot_token: str | None = Field(default=None, description="Telegram bot token")
    bot_api_base_url: str = Field(
        default="https://api.telegram.org", description="Telegram Bot API base URL"
    )

    # Stock update channel
    stock_update_channel: str = Field(
        default="stock:updated", description="Pub/sub channel for stock updates"
    )
    stock_publish_timeout: float = Field(
        default=0.5, description="Hard timeout for a stock update publish (seconds)"
    )
    subscriber_max_retries: int = Field(
        default=5, description="Reconnect attempts before a subscriber gives up"
    )
    subscriber_retry_base_delay: float = Field(
        default=0.05, description="Base delay for subscriber reconnect backoff (seconds)"
    )
    subscriber_retry_max_delay: float = Field(
        default=2.0, description="Max delay between subscriber reconnects (seconds)"
    )

    # Catalog cache
    product_cache_ttl: int = Field(default=300, description="Product cache TTL (seconds)")

    # Notifications
    admin_delivery_timeout: float = Field(
        default=5.0, description="Per-admin notification delivery timeout (seconds)"
    )
    customer_delivery_timeout: float = Field(
        default=10.0, description="Customer notification delivery timeout (seconds)"
    )
    notification_retry_interval: int = Field(
        default=300, description="Interval between failed notification sweeps (seconds)"
    )
    notification_max_retries: int = Field(
        default=3, description="Max resend attempts for a failed notification"
    )
    notification_read_status_ttl: int = Field(
        default=7 * 86400, description="How long admin read-status entries are kept (seconds)"
    )

    # Checkout timeout
    checkout_timeout_minutes: int = Field(
        default=15, description="Age after which an unpaid pending order is cancelled (minutes)"
    )
    checkout_sweep_interval: int = Field(
        default=300, description="Interval between abandoned order sweeps (seconds)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("stock_publish_timeout")
    @classmethod
    def validate_publish_timeout(cls, v: float) -> float:
        """Publishing must stay sub-second so it never stalls a stock mutation."""
        if v <= 0 or v >= 1:
            raise ValueError("stock_publish_timeout must be between 0 and 1 second")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def uses_sqlite(self) -> bool:
        """Check if the configured database is SQLite."""
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
