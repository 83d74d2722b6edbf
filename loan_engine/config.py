"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LoanEngineConfig(BaseSettings):
    """Loan engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LOAN_ENGINE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///loan_engine.db"  # memory:// for an in-memory store

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Calculation defaults
    default_currency: str = "USD"
    default_calculation_method: str = "REDUCING_BALANCE"
    default_max_debt_to_income_ratio: str = "40"  # percent
    default_restructure_rate: str = "12"  # percent, used when none is supplied

    # System-wide engine settings, overridable per organization
    loan_engine_type: str = "REDUCING_BALANCE"
    loan_approval_required: bool = True
    loan_auto_process_enabled: bool = True

    # Lifecycle engine
    engine_enabled: bool = True
    engine_schedule_cron: str = "0 1 * * *"  # informational, read by the scheduler
    engine_lock_enabled: bool = True

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = LoanEngineConfig()


def get_config() -> LoanEngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanEngineConfig:
    """Reload configuration from environment"""
    global config
    config = LoanEngineConfig()
    return config
