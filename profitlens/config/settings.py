"""
ProfitLens Analytics Engine
Centralized Configuration Management

Pydantic settings with environment variable support for the store, cache,
chunked loader and analytics engine.
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
    db: str = Field(default="profitlens", alias="database", description="Database name")
    user: str = Field(default="profitlens", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, description="Full async URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL for asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis Cache Configuration"""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=50, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    decode_responses: bool = Field(default=True, description="Decode responses to strings")
    url: Optional[str] = Field(default=None, alias="REDIS_URL", description="Redis URL (overrides host/port)")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class LoaderSettings(BaseSettings):
    """Chunked Dataset Loader Configuration"""

    model_config = SettingsConfigDict(env_prefix="LOADER_")

    order_page_size: int = Field(default=20, ge=1, description="Initial page size for the order track")
    order_min_page_size: int = Field(default=1, ge=1, description="Page size floor for the order track")
    supplemental_page_size: int = Field(default=400, ge=1, description="Initial page size for supplemental datasets")
    secondary_page_size: int = Field(default=200, ge=1, description="Initial page size for session/shop analytics")
    supplemental_min_page_size: int = Field(default=25, ge=1, description="Page size floor for supplemental datasets")

    # Token bucket applied to every store read; disabled when unset
    rate_limit_per_second: Optional[float] = Field(default=None, gt=0, description="Reads per second")
    rate_limit_burst: int = Field(default=10, ge=1, description="Token bucket capacity")


class AnalyticsSettings(BaseSettings):
    """Cost Allocation and Metrics Configuration"""

    model_config = SettingsConfigDict(env_prefix="ANALYTICS_")

    money_precision: int = Field(default=2, ge=0, description="Decimal places for money fields")
    timezone_offset_minutes: int = Field(default=0, description="Store offset used to bucket orders into dates")
    cache_enabled: bool = Field(default=True, description="Cache range analytics results")
    cache_ttl_seconds: int = Field(default=600, description="Range analytics cache TTL")
    account_level_insights_only: bool = Field(
        default=True,
        description="Ignore campaign/adset insight rows to avoid double counting spend",
    )


class MonitoringSettings(BaseSettings):
    """Logging Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

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
    )

    # Application
    app_name: str = Field(default="profitlens", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    loader: LoaderSettings = Field(default_factory=LoaderSettings)
    analytics: AnalyticsSettings = Field(default_factory=AnalyticsSettings)
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


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
