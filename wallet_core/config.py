"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class WalletConfig(BaseSettings):
    """Wallet core configuration"""

    # Database configuration
    database_url: str = "sqlite:///wallet.db"  # memory://, sqlite:///..., postgresql://...
    lock_timeout_seconds: float = 5.0  # Bounded wait for row locks and commits

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    cors_origins: List[str] = ["*"]

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    class Config:
        env_prefix = "WALLET_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = WalletConfig()


def get_config() -> WalletConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> WalletConfig:
    """Reload configuration from environment"""
    global config
    config = WalletConfig()
    return config
