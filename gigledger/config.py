"""
Application configuration using pydantic-settings.

Loads configuration from environment variables with sensible defaults.
"""
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database (SQLite for local dev, PostgreSQL for production)
    database_url: str = "sqlite:///./gigledger.db"
    db_pool_size: int = 10
    db_max_overflow: int = 20

    # Redis (Celery broker + result backend)
    redis_url: str = "redis://localhost:6379/0"

    # File Storage
    upload_dir: Path = Path("./uploads")
    max_upload_size_mb: int = 25

    # Application
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"
    sentry_dsn: Optional[str] = None

    # OCR Settings
    tesseract_cmd: Optional[str] = None

    # Bookkeeping policy
    default_currency: str = "CAD"
    receipt_hold_threshold: Decimal = Decimal("0.70")
    reconciliation_tolerance: Decimal = Decimal("0.01")
    reconciliation_postable_keys: List[str] = [
        "Income.GrossUberRidesFares",
        "Fee.UberRidesFees",
        "TaxCollected.GSTHST",
        "ITC.GSTHSTPaidToUber",
    ]
    text_fallback_lookahead: int = 4

    @property
    def max_upload_size_bytes(self) -> int:
        """Get maximum upload size in bytes."""
        return self.max_upload_size_mb * 1024 * 1024


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
