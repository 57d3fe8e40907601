"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class BankCoreConfig(BaseSettings):
    """Banking core configuration"""

    # Record store configuration
    database_url: str = "sqlite:///bankcore.db"  # memory:// for tests
    store_timeout_seconds: float = 3.0  # Per-call deadline of the record store

    # Money configuration
    default_currency: str = "USD"

    # Registration / security configuration
    activation_token_ttl_hours: int = 72
    password_min_length: int = 8
    password_max_length: int = 72
    name_max_length: int = 500

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Notification configuration
    notification_workers: int = 2
    notification_webhook_url: str = ""  # Empty = log only
    notification_timeout: float = 5.0
    notification_sender: str = "no-reply@bankcore.local"


    class Config:
        env_prefix = "BANKCORE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = BankCoreConfig()


def get_config() -> BankCoreConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BankCoreConfig:
    """Reload configuration from environment"""
    global config
    config = BankCoreConfig()
    return config
