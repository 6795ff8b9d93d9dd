"""
Environment configuration loader with validation for the configuration service.
"""

import logging
import os
from typing import Optional, Dict, Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from ..cache.config import ValkeyConfig
from ..models.node import InvalidationPolicy

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("true", "1", "yes", "on")


class AppConfig(BaseModel):
    """Configuration model for the configuration service with validation."""
    model_config = ConfigDict(use_enum_values=False)

    # Database Configuration
    database_url: Optional[str] = Field(
        default=None, description="Database connection URL; built from DB_* variables when unset"
    )
    db_pool_timeout_seconds: float = Field(
        default=5.0, gt=0, description="Seconds to wait for a pooled database connection"
    )

    # Valkey Cache Configuration
    valkey_host: str = Field(default="localhost", description="Valkey server host")
    valkey_port: int = Field(
        default=6379, ge=1, le=65535, description="Valkey server port"
    )
    valkey_password: Optional[str] = Field(
        default=None, description="Valkey server password"
    )
    valkey_database: int = Field(
        default=0, ge=0, le=15, description="Valkey database number"
    )
    valkey_max_connections: int = Field(
        default=10, ge=1, description="Maximum Valkey connections"
    )
    valkey_socket_timeout: float = Field(
        default=5.0, gt=0, description="Valkey socket timeout in seconds"
    )
    valkey_socket_connect_timeout: float = Field(
        default=5.0, gt=0, description="Valkey connection timeout in seconds"
    )
    cache_max_retries: int = Field(
        default=3, ge=0, description="Retries after a failed Valkey call"
    )
    cache_retry_backoff_seconds: float = Field(
        default=0.05, ge=0.0, description="Base retry delay, doubled on every retry"
    )

    # Engine Configuration
    invalidation_policy: InvalidationPolicy = Field(
        default=InvalidationPolicy.DEPENDENCIES, description="Which one-hop neighbours a write invalidates"
    )
    event_batch_interval_ms: int = Field(
        default=0, ge=0, description="Update batching interval; 0 publishes every write immediately"
    )

    # Service Configuration
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("invalidation_policy", mode="before")
    @classmethod
    def normalize_policy(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    def to_valkey_config(self) -> ValkeyConfig:
        """Valkey connection settings derived from this configuration."""
        return ValkeyConfig(
            host=self.valkey_host,
            port=self.valkey_port,
            password=self.valkey_password,
            database=self.valkey_database,
            max_connections=self.valkey_max_connections,
            socket_timeout=self.valkey_socket_timeout,
            socket_connect_timeout=self.valkey_socket_connect_timeout,
            max_retries=self.cache_max_retries,
            retry_backoff_seconds=self.cache_retry_backoff_seconds,
        )


def load_config(env_file: Optional[str] = None) -> AppConfig:
    """
    Load configuration from environment variables and .env file.

    Args:
        env_file: Optional path to .env file. If None, looks for .env in current directory.

    Returns:
        AppConfig: Validated configuration object

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    # Load environment variables from .env file if it exists
    if env_file is None:
        env_file = ".env"

    if os.path.exists(env_file):
        load_dotenv(env_file)

    try:
        # Create configuration from environment variables
        config_data: Dict[str, Any] = {
            "database_url": os.getenv("DATABASE_URL") or None,
            "db_pool_timeout_seconds": float(os.getenv("DB_POOL_TIMEOUT", "5")),
            "valkey_host": os.getenv("VALKEY_HOST", "localhost"),
            "valkey_port": int(os.getenv("VALKEY_PORT", "6379")),
            "valkey_password": os.getenv("VALKEY_PASSWORD") or None,
            "valkey_database": int(os.getenv("VALKEY_DATABASE", "0")),
            "valkey_max_connections": int(os.getenv("VALKEY_MAX_CONNECTIONS", "10")),
            "valkey_socket_timeout": float(os.getenv("VALKEY_SOCKET_TIMEOUT", "5")),
            "valkey_socket_connect_timeout": float(
                os.getenv("VALKEY_SOCKET_CONNECT_TIMEOUT", "5")
            ),
            "cache_max_retries": int(os.getenv("CACHE_MAX_RETRIES", "3")),
            "cache_retry_backoff_seconds": float(os.getenv("CACHE_RETRY_BACKOFF_SECONDS", "0.05")),
            "invalidation_policy": os.getenv("INVALIDATION_POLICY", "dependencies"),
            "event_batch_interval_ms": int(os.getenv("EVENT_BATCH_INTERVAL_MS", "0")),
            "debug": os.getenv("CONFIGCACHE_DEBUG", "false").lower() in _TRUE_VALUES,
            "log_level": os.getenv("CONFIGCACHE_LOG_LEVEL", "INFO"),
        }
        return AppConfig(**config_data)
    except (PydanticValidationError, ValueError) as e:
        raise ValueError(f"Configuration validation failed: {e}") from e


def validate_required_settings(config: AppConfig) -> None:
    """
    Validate that all required settings are properly configured.

    Raises:
        ValueError: If required settings are missing or invalid
    """
    if not config.valkey_host:
        raise ValueError("VALKEY_HOST is required")

    logger.debug(
        f"Configuration validated: database={config.database_url or 'from DB_* variables'}, "
        f"valkey={config.valkey_host}:{config.valkey_port}, policy={config.invalidation_policy.value}"
    )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """
    Get the global configuration instance, loading it if necessary.

    Returns:
        AppConfig: The global configuration object
    """
    global _config
    if _config is None:
        _config = load_config()
        validate_required_settings(_config)
    return _config


def reset_config() -> None:
    """Forget the global configuration so the next access reloads it."""
    global _config
    _config = None
