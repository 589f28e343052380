"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
Business policy values that touch money are kept as strings and parsed to Decimal on use.
"""

from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Bank ledger configuration"""

    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    database_path: str = "bank_ledger.db"
    history_database_path: Optional[str] = None  # None keeps history tables in the entity database
    database_timeout_seconds: float = 5.0

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"

    # Money configuration
    default_currency: str = "INR"

    # Business rules configuration
    default_account_interest_rate: str = "4.00"
    premature_penalty_rate: str = "1.00"  # Percentage points taken off the contracted rate
    loan_closure_tolerance: str = "0.01"
    interest_days_per_year: int = 365
    average_days_per_month: str = "30.44"

    # Numbering configuration
    numbering_max_retries: int = 10
    numbering_timestamp_digits: int = 8
    numbering_suffix_digits: int = 3

    # Reporting configuration
    maturity_horizon_days: int = 30
    due_horizon_days: int = 7

    # Collaborators
    enable_audit_logging: bool = True
    enable_notifications: bool = True
    notification_webhook_url: str = ""  # Empty = disabled
    notification_timeout_seconds: int = 10
    notification_max_retries: int = 3

    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False

    @property
    def penalty_rate(self) -> Decimal:
        return Decimal(self.premature_penalty_rate)

    @property
    def closure_tolerance(self) -> Decimal:
        return Decimal(self.loan_closure_tolerance)

    @property
    def days_per_month(self) -> Decimal:
        return Decimal(self.average_days_per_month)

    @property
    def account_interest_rate(self) -> Decimal:
        return Decimal(self.default_account_interest_rate)


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
