"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class PortfolioConfig(BaseSettings):
    """Loan portfolio engine configuration"""

    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    database_path: str = "loan_portfolio.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Money configuration
    default_currency: str = "BRL"

    # Late payment penalty (informative, never added to installment totals)
    late_penalty_rate: str = "0.02"     # 2% flat on the overdue amount
    daily_penalty_rate: str = "0.001"   # 0.1% per day overdue

    # Schedule synchronization
    discard_partial_schedules: bool = True

    # Payment recording
    resync_after_payment: bool = True
    payment_tolerance: str = "0.01"

    # Reporting
    kpi_default_filter: str = "month"

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "PORTFOLIO_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = PortfolioConfig()


def get_config() -> PortfolioConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> PortfolioConfig:
    """Reload configuration from environment"""
    global config
    config = PortfolioConfig()
    return config
