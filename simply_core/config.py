"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
Business constants are stored as strings and converted to Decimal at the point of use.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class SimplyConfig(BaseSettings):
    """Simply ledger and accrual engine configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///simply.db"  # memory:// for tests
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_workers: int = 1
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Investment (FCI) rules
    fci_annual_rate: str = "22.08"  # Percent per year
    fci_type: str = "money_market"
    credit_percentage: str = "15"  # Percent of current value usable as credit
    min_investment_amount: str = "1000"
    accrual_precision: int = 4
    max_simulation_months: int = 120
    
    # Financing rules
    penalty_rate: str = "3"  # Percent
    min_financing_amount: str = "1000"
    min_installments: int = 2
    max_installments: int = 48
    installment_due_day: int = 10
    
    # Transfer rules
    transfer_fee_rate: str = "0.5"  # Percent
    
    # Wallet rules
    default_daily_limit: str = "500000"
    default_monthly_limit: str = "5000000"
    max_alias_changes: int = 3  # Per calendar year
    alias_max_length: int = 20
    cvu_bank_code: str = "0000285"
    cvu_branch_code: str = "0000"
    cvu_max_attempts: int = 10
    
    # Pagination
    default_page_size: int = 20
    max_page_size: int = 100
    
    # Feature flags
    enable_events: bool = True
    
    class Config:
        env_prefix = "SIMPLY_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = SimplyConfig()


def get_config() -> SimplyConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> SimplyConfig:
    """Reload configuration from environment"""
    global config
    config = SimplyConfig()
    return config
