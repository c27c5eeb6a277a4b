"""
Nexus Monitor
Centralized Configuration Management

Configuration is read from environment variables (and an optional ``.env``
file) through Pydantic settings, one section per subsystem.
"""

from functools import lru_cache
from typing import Optional
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """PostgreSQL Database Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="nexus_monitor", description="Database name")
    user: str = Field(default="nexus", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(
        default=None,
        alias="DATABASE_URL",
        description="Full async database URL (overrides host/port, e.g. sqlite+aiosqlite:///nexus.db)",
    )

    @property
    def async_url(self) -> str:
        """Async database URL for asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"

    @property
    def sync_url(self) -> str:
        """Sync database URL for psycopg2"""
        return f"postgresql+psycopg2://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class PipelineSettings(BaseSettings):
    """Aggregation and Alerting Pipeline Configuration"""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_")

    bucket_concurrency: int = Field(default=4, ge=1, description="Max buckets recomputed in parallel per user")
    bucket_retry_attempts: int = Field(default=2, ge=0, description="Retries for failed bucket recomputes")
    bucket_retry_backoff_ms: int = Field(default=250, ge=0, description="Backoff between bucket retries")
    domestic_country: str = Field(default="US", description="Destination country counted toward nexus")
    alert_list_limit: int = Field(default=50, ge=1, description="Default page size for alert listings")


class NotificationSettings(BaseSettings):
    """Alert Notification Dispatch Configuration"""

    model_config = SettingsConfigDict(env_prefix="NOTIFY_")

    transport: str = Field(default="log", description="Dispatch transport: log or webhook")
    webhook_url: Optional[str] = Field(default=None, description="Webhook endpoint for alert payloads")
    webhook_secret: Optional[SecretStr] = Field(default=None, description="Shared secret sent with webhook calls")
    timeout_seconds: float = Field(default=10.0, gt=0, description="Per-dispatch timeout")

    @field_validator("transport")
    @classmethod
    def validate_transport(cls, v: str) -> str:
        """Validate transport value"""
        allowed = ["log", "webhook"]
        if v.lower() not in allowed:
            raise ValueError(f"Transport must be one of: {allowed}")
        return v.lower()


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or text")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="nexus-monitor", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST", description="API host")
    api_port: int = Field(default=8000, alias="API_PORT", description="API port")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.app_env == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
