"""
Compliance ledger configuration.

Loads environment variables (and an optional .env file) into typed settings.
Regulatory limits that the FuelEU text leaves to the operator (banking
window, borrowing cap, repayment deadline) live here rather than in code.

Usage:
    from src.config import get_settings

    settings = get_settings()
    settings.configure_logging()
    print(settings.borrowing_cap_fraction)
"""
import logging
from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

POOL_POLICIES = ("largest_surplus_first", "pro_rata")


class Settings(BaseSettings):
    """Ledger settings loaded from environment variables."""

    # ========================================================================
    # Database Configuration
    # ========================================================================
    database_url: str = "sqlite:///./fueleu_ledger.db"
    db_echo: bool = False

    # ========================================================================
    # Banking & Borrowing (Article 20)
    # ========================================================================
    # Number of years a banked surplus stays usable; None = no expiry
    banking_window_years: Optional[int] = None
    # Max advance as a fraction of the expected next-year surplus
    borrowing_cap_fraction: float = 0.02
    # Borrowed amounts must be repaid within this many years
    borrowing_repayment_years: int = 1

    # ========================================================================
    # Intensity Calculation
    # ========================================================================
    renewable_emission_factor_multiplier: float = 0.0

    # ========================================================================
    # Pooling (Article 21)
    # ========================================================================
    pool_allocation_policy: str = "largest_surplus_first"
    pool_tolerance: float = 1e-6

    # ========================================================================
    # Logging
    # ========================================================================
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("banking_window_years")
    @classmethod
    def _window_positive(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 1:
            raise ValueError("banking_window_years must be >= 1 or unset")
        return value

    @field_validator("borrowing_cap_fraction", "renewable_emission_factor_multiplier")
    @classmethod
    def _unit_fraction(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("value must lie in [0, 1]")
        return value

    @field_validator("borrowing_repayment_years")
    @classmethod
    def _repayment_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("borrowing_repayment_years must be >= 1")
        return value

    @field_validator("pool_allocation_policy")
    @classmethod
    def _known_policy(cls, value: str) -> str:
        value = value.lower()
        if value not in POOL_POLICIES:
            raise ValueError(f"Unknown pool policy: {value}. Valid: {list(POOL_POLICIES)}")
        return value

    def configure_logging(self):
        """Configure logging based on settings."""
        level = getattr(logging, self.log_level.upper(), logging.INFO)
        logging.basicConfig(level=level, format=self.log_format)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Ledger settings
    """
    return Settings()
