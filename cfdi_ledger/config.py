"""
Configuration management using Pydantic Settings.
All parameters are loaded from environment variables with sensible defaults.
"""

import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


APP_BASE_PATH = Path(os.environ.get(
    "CFDI_LEDGER_BASE_PATH",
    Path.home() / ".cfdi_ledger",
))
ENV_FILE_PATH = APP_BASE_PATH / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: str = Field(default="development")
    app_log_level: str = Field(default="INFO")

    # Artifact storage
    upload_dir: Path = Field(default=Path("./data/uploads"))
    reports_dir: Path = Field(default=Path("./data/reports"))
    cfdi_bucket: str = Field(default="cfdi")

    # Ingestion
    no_folio_marker: str = Field(default="Sin folio")

    # Remote metadata extraction
    metadata_extractor_url: Optional[str] = Field(default=None)
    metadata_extractor_token: str = Field(default="")
    metadata_timeout_seconds: float = Field(default=30.0)

    # Reconciliation
    paid_tolerance: Decimal = Field(default=Decimal("0.01"))
    audit_interval_seconds: int = Field(default=900)

    # Payment batches
    batch_enforce_balance: bool = Field(default=False)

    def is_settled(self, balance: Decimal) -> bool:
        """
        Check whether a remaining balance counts as fully paid.
        Returns: balance <= paid_tolerance
        """
        return balance <= self.paid_tolerance

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
