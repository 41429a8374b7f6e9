"""Configuration settings for the grant ledger."""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings read from ``GRANTS_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="GRANTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: Optional[str] = Field(
        default=None, description="SQLAlchemy URL; in-memory storage when unset"
    )

    research_default: Decimal = Field(
        default=Decimal("20000.00"), description="Annual research grant allowance"
    )
    journal_default: Decimal = Field(
        default=Decimal("30000.00"), description="Annual journal grant allowance"
    )

    lock_timeout_seconds: float = Field(
        default=5.0, description="Max wait for the per-user balance lock"
    )
    max_retries: int = Field(
        default=3, description="Retry attempts for conflicts and storage failures"
    )
    retry_backoff_seconds: float = Field(
        default=0.05, description="Base delay, doubled on every retry"
    )

    receipt_dir: Path = Field(default=Path("uploads"), description="Receipt storage directory")
    max_receipt_bytes: int = Field(default=10 * 1024 * 1024, description="Receipt size limit")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", description="Log output format"
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()
