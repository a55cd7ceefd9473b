"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class PortalConfig(BaseSettings):
    """Approval portal configuration"""

    # Database configuration
    database_url: str = "sqlite:///portal.db"  # memory:// for in-memory storage
    lock_timeout_seconds: float = 5.0
    transaction_retries: int = 1

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_workers: int = 1

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Workflow rules
    admin_roles: List[str] = ["Admin"]
    seed_default_templates: bool = True

    # Notification delivery
    notification_webhook_url: str = ""  # Empty = webhook delivery disabled
    notification_webhook_timeout: float = 5.0

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "PORTAL_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = PortalConfig()


def get_config() -> PortalConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> PortalConfig:
    """Reload configuration from environment"""
    global config
    config = PortalConfig()
    return config
