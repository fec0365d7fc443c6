"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class AtmBankConfig(BaseSettings):
    """ATM bank simulator configuration"""

    model_config = SettingsConfigDict(
        env_prefix="ATM_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Record store configuration
    data_dir: str = "data"
    customer_file: str = "customers.txt"
    account_file: str = "accounts.txt"
    transaction_file: str = "transactions.txt"
    account_request_file: str = "account_requests.txt"

    # Business rules configuration
    base_currency: str = "CAD"
    chequing_overdraft_limit: str = "100.00"
    credit_card_limit: str = "1000.00"
    line_of_credit_limit: str = "5000.00"
    first_customer_number: int = 1001
    first_account_number: int = 1

    # Re-read every record file after each mutation instead of
    # updating the in-memory indexes in place
    full_reload_after_mutation: bool = False

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    @property
    def data_path(self) -> Path:
        """Data directory as a Path"""
        return Path(self.data_dir)


# Global configuration instance
config = AtmBankConfig()


def get_config() -> AtmBankConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> AtmBankConfig:
    """Reload configuration from environment"""
    global config
    config = AtmBankConfig()
    return config
