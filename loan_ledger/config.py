"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoanLedgerConfig(BaseSettings):
    """Loan lifecycle and ledger engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LOAN_LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "memory://"  # or sqlite:///loan_ledger.db

    # Currency
    default_currency: str = "ZAR"

    # Lending rules (rates are percentages of principal, e.g. 15 = 15%)
    member_interest_rate: Decimal = Decimal("15")
    client_interest_rate: Decimal = Decimal("25")
    default_penalty_fee: Decimal = Decimal("50.00")
    max_loan_amount: Decimal = Decimal("5000.00")

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Feature flags
    enable_events: bool = True

    @field_validator("member_interest_rate", "client_interest_rate",
                     "default_penalty_fee", "max_loan_amount")
    @classmethod
    def _non_negative(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value}")
        return value


# Global configuration instance
config = LoanLedgerConfig()


def get_config() -> LoanLedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanLedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LoanLedgerConfig()
    return config
