"""
Configuration Management Module

Provides centralized configuration using pydantic-settings. Every field can be
set from the environment with the BALANCE_ prefix or from a local .env file.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings
from typing import Optional


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS = ("json", "text")


class BalanceCheckerConfig(BaseSettings):
    """Balance checker server and client configuration"""

    # Server configuration
    server_host: str = "0.0.0.0"
    server_port: int = 6969

    # Client configuration
    client_host: str = "localhost"
    client_port: int = 6969

    # Ledger storage configuration
    users_dir: str = "users"
    user_file_suffix: str = ".txt"
    lock_accounts: bool = False  # Serialize read-check-append per username inside one process
    discard_torn_tail: bool = False  # Ignore an unterminated, unparsable last ledger line

    # Protocol configuration
    fold_request_case: bool = False  # Lower-case whole request line (legacy wire behaviour)

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: Optional[str] = None  # If None, logs to stderr

    @field_validator("server_port", "client_port")
    @classmethod
    def validate_port(cls, v):
        if not 0 <= v <= 65535:
            raise ValueError("Port must be between 0 and 65535")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        if v.upper() not in LOG_LEVELS:
            raise ValueError(f"Log level must be one of {', '.join(LOG_LEVELS)}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        if v.lower() not in LOG_FORMATS:
            raise ValueError("Log format must be json or text")
        return v.lower()

    class Config:
        env_prefix = "BALANCE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = BalanceCheckerConfig()


def get_config() -> BalanceCheckerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BalanceCheckerConfig:
    """Reload configuration from environment"""
    global config
    config = BalanceCheckerConfig()
    return config
