"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class BankStoreConfig(BaseSettings):
    """Bank store configuration"""

    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///path, postgresql://...
    database_pool_size: int = 5
    database_pool_timeout: float = 30.0  # Seconds to wait for a pooled connection
    lock_timeout_seconds: float = 10.0  # Row lock / busy wait bound
    auto_migrate: bool = True

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Listing configuration
    default_page_size: int = 20
    max_page_size: int = 100

    class Config:
        env_prefix = "BANKSTORE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = BankStoreConfig()


def get_config() -> BankStoreConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BankStoreConfig:
    """Reload configuration from environment"""
    global config
    config = BankStoreConfig()
    return config
