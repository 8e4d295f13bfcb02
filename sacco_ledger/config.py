"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings

from .currency import Currency


class SaccoConfig(BaseSettings):
    """SACCO ledger engine configuration"""

    # Storage configuration
    database_url: str = "sqlite:///sacco.db"  # or memory:// for tests

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Currency used for every member account
    currency: str = "UGX"

    # Loan product rules
    minimum_loan_amount: Decimal = Decimal("1000")
    min_term_months: int = 1
    max_term_months: int = 36
    default_loan_interest_rate: Decimal = Decimal("10")  # percent per month of term unless the basis is "annual"
    loan_interest_basis: str = "per_month"  # or "annual" to prorate the rate over term/12

    # Loan eligibility rules
    min_savings_for_loan: Decimal = Decimal("10000")
    max_loan_to_savings_multiple: Decimal = Decimal("3")
    loan_privilege_suspension_days: int = 30

    # Savings interest rules
    default_savings_interest_rate: Decimal = Decimal("5")  # percent per annum
    max_interest_rate_percent: Decimal = Decimal("20")

    # Concurrency
    lock_timeout_seconds: float = 10.0

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "SACCO_"
        env_file = ".env"
        case_sensitive = False

    @property
    def currency_enum(self) -> Currency:
        """Resolve the configured currency code"""
        try:
            return Currency[self.currency.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency code: {self.currency}")


# Global configuration instance
config = SaccoConfig()


def get_config() -> SaccoConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> SaccoConfig:
    """Reload configuration from environment"""
    global config
    config = SaccoConfig()
    return config
