"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LMSConfig(BaseSettings):
    """Loan ledger service configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LMS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "lms_ledger.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    cors_origins: str = "*"  # Comma separated

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    currency: str = "GBP"
    default_term_months: int = 3  # Used when a loan carries no term
    max_term_months: int = 120
    audit_page_size: int = 50

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = LMSConfig()


def get_config() -> LMSConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LMSConfig:
    """Reload configuration from environment"""
    global config
    config = LMSConfig()
    return config
