"""
Shared Configuration - Application Settings and Environment Management
Centralized configuration management for the DEJA-VU data layer.

This module provides:
- Environment-based configuration
- Type-safe settings with validation
- Database connection and pool settings
- Performance monitoring settings
"""
from typing import Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings
from enum import Enum


class Environment(str, Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseSettings(BaseSettings):
    """Database configuration settings."""

    # Primary database URL (takes precedence if set)
    database_url: Optional[str] = Field(None, env="DATABASE_URL")

    # Individual database components (used if DATABASE_URL not set)
    db_host: str = Field("localhost", env="DB_HOST")
    db_port: int = Field(5432, env="DB_PORT")
    db_name: str = Field("dejavu", env="DB_NAME")
    db_user: str = Field("dejavu", env="DB_USER")
    db_password: str = Field("dejavu_dev_password", env="DB_PASSWORD")
    db_echo: bool = Field(False, env="DB_ECHO")

    # Connection pool settings
    db_pool_min: int = Field(2, env="DB_POOL_MIN")
    db_pool_max: int = Field(10, env="DB_POOL_MAX")
    db_acquire_timeout_ms: int = Field(30000, env="DB_ACQUIRE_TIMEOUT_MS")
    db_idle_timeout_ms: int = Field(300000, env="DB_IDLE_TIMEOUT_MS")
    db_cleanup_interval_ms: int = Field(60000, env="DB_CLEANUP_INTERVAL_MS")

    @field_validator("db_port")
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v):
        if v < 1:
            raise ValueError("Pool max must be at least 1")
        return v

    @field_validator("db_pool_min")
    @classmethod
    def validate_pool_min(cls, v):
        if v < 0:
            raise ValueError("Pool min cannot be negative")
        return v

    @field_validator("db_acquire_timeout_ms", "db_idle_timeout_ms", "db_cleanup_interval_ms")
    @classmethod
    def validate_positive_millis(cls, v):
        if v <= 0:
            raise ValueError("Timeouts and intervals must be positive")
        return v

    @model_validator(mode="after")
    def validate_pool_bounds(self):
        if self.db_pool_min > self.db_pool_max:
            raise ValueError("Pool min cannot exceed pool max")
        return self

    def get_database_url(self) -> str:
        """Get the complete database URL."""
        if self.database_url:
            return self.database_url

        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    def to_pool_config(self):
        """Build the connection pool configuration from these settings."""
        from .database.pool import PoolConfig

        return PoolConfig(
            min=self.db_pool_min,
            max=self.db_pool_max,
            acquire_timeout_millis=self.db_acquire_timeout_ms,
            idle_timeout_millis=self.db_idle_timeout_ms,
            cleanup_interval_millis=self.db_cleanup_interval_ms,
        )

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


class SupabaseSettings(BaseSettings):
    """Managed Postgres (Supabase) credentials."""

    supabase_db_key: Optional[str] = Field(None, env="SUPABASE_DB_KEY")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


class MonitoringSettings(BaseSettings):
    """Monitoring and logging configuration settings."""

    log_level: LogLevel = Field(LogLevel.INFO, env="LOG_LEVEL")
    log_file: str = Field("logs/dejavu.log", env="LOG_FILE")  # production only
    slow_query_threshold_ms: float = Field(1000.0, env="SLOW_QUERY_THRESHOLD_MS")
    perf_sample_window: int = Field(100, env="PERF_SAMPLE_WINDOW")

    @field_validator("perf_sample_window")
    @classmethod
    def validate_sample_window(cls, v):
        if v < 1:
            raise ValueError("Sample window must hold at least one sample")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


class Settings(BaseSettings):
    """Main application settings."""

    # Application settings
    environment: Environment = Field(Environment.DEVELOPMENT, env="ENVIRONMENT")
    app_name: str = Field("DEJA-VU", env="APP_NAME")

    # Component settings
    database: DatabaseSettings = DatabaseSettings()
    supabase: SupabaseSettings = SupabaseSettings()
    monitoring: MonitoringSettings = MonitoringSettings()

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings


def get_database_settings() -> DatabaseSettings:
    """Get database settings."""
    return settings.database


def get_monitoring_settings() -> MonitoringSettings:
    """Get monitoring settings."""
    return settings.monitoring


def get_config_summary() -> dict:
    """
    Get a summary of the current configuration (without sensitive data).

    Returns:
        Dictionary with configuration summary
    """
    return {
        "environment": settings.environment,
        "app_name": settings.app_name,
        "database": {
            "host": settings.database.db_host,
            "port": settings.database.db_port,
            "name": settings.database.db_name,
            "pool_min": settings.database.db_pool_min,
            "pool_max": settings.database.db_pool_max,
        },
        "monitoring": {
            "log_level": settings.monitoring.log_level,
            "slow_query_threshold_ms": settings.monitoring.slow_query_threshold_ms,
        },
        "supabase_configured": bool(settings.supabase.supabase_db_key),
    }
