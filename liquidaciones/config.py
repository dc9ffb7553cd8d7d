"""
Configuration management using Pydantic Settings.
All parameters are loaded from environment variables with sensible defaults.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


APP_BASE_PATH = Path(os.environ.get(
    "LIQUIDACIONES_BASE_PATH",
    Path.home() / "Documents" / "liquidaciones",
))
ENV_FILE_PATH = APP_BASE_PATH / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: str = Field(default="development")
    app_log_level: str = Field(default="INFO")

    # Order resolver (external organizer lookup)
    orders_api_base_url: Optional[str] = Field(default=None)
    orders_api_token: Optional[str] = Field(default=None)
    orders_api_timeout_seconds: float = Field(default=15.0)
    orders_api_max_attempts: int = Field(default=3)
    orders_file: Path = Field(default=APP_BASE_PATH / "data" / "orders.json")
    resolver_concurrency: int = Field(default=4)

    # Matching parameters
    installment_max_total: int = Field(default=60)
    derived_coupon_digits: int = Field(default=2)

    # Summary validation
    total_tolerance_cents: int = Field(default=1)

    # Storage
    reports_dir: Path = Field(default=APP_BASE_PATH / "reports")

    def totals_match(self, declared_cents: int, reconciled_cents: int) -> bool:
        """
        Cross-check the declared PDF total against the reconciled total.
        Difference must stay strictly under the tolerance (one minor unit).
        """
        return abs(declared_cents - reconciled_cents) < self.total_tolerance_cents

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
