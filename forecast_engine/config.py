"""
Application configuration using pydantic-settings.

Loads configuration from environment variables with sensible defaults.
"""
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database (SQLite for local dev, PostgreSQL for production)
    database_url: str = "sqlite:///./forecast_engine.db"
    db_pool_size: int = 10
    db_max_overflow: int = 20

    # Uploads
    max_upload_size_mb: int = 20

    # Application
    debug: bool = False
    log_level: str = "INFO"
    sentry_dsn: Optional[str] = None
    environment: str = "development"
    sentry_traces_sample_rate: float = 0.1

    # Import pipeline
    historical_min_periods: int = 24
    actuals_min_periods: int = 1
    write_chunk_size: int = 500

    # Forecasting
    default_forecast_months: int = 12
    default_methodology: str = "run_rate"
    template_months: int = 12

    @property
    def max_upload_size_bytes(self) -> int:
        """Get maximum upload size in bytes."""
        return self.max_upload_size_mb * 1024 * 1024


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
