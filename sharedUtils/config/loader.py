"""Configuration loader with lazy cached loading."""

from typing import Dict, Any, Optional, Union
import os
import tomllib
from pathlib import Path
from sharedUtils.logger.logger import get_logger, reload_logging_config
from sharedUtils.config.models import (
    AppConfig,
    CollectorConfig,
    BatchBufferConfig,
    PersistenceConfig,
    SchedulerConfig,
    IdentityConfig,
    ServerConfig,
    LoggingConfig,
)

logger = get_logger(__name__)

CONFIG_ENV_VAR = "TELEMETRY_CONFIG"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.toml"

# Global config cache
_CONFIG_CACHE: Optional[Dict[str, Any]] = None
_TYPED_CONFIG_CACHE: Optional[AppConfig] = None


def resolve_config_path() -> Path:
    """Return the config path, honouring the TELEMETRY_CONFIG override."""
    override = os.environ.get(CONFIG_ENV_VAR)
    return Path(override) if override else DEFAULT_CONFIG_PATH


def load_config(path: Union[str, Path]) -> AppConfig:
    """
    Load and validate a configuration file without touching the cache.

    Args:
        path: TOML file to read

    Returns:
        Validated AppConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValidationError: If config doesn't match expected schema
    """
    path = Path(path)
    if not path.exists():
        logger.error("Config file not found: %s", path)
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "rb") as f:
        return AppConfig(**tomllib.load(f))


def get_config() -> Dict[str, Any]:
    """
    Get configuration dictionary (lazy-loaded, cached).

    Loads config from sharedUtils/config/config.toml (or $TELEMETRY_CONFIG)
    on first access and caches it for subsequent calls.

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If config file doesn't exist
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE is None:
        config_path = resolve_config_path()

        logger.debug("Loading config from: %s", config_path)

        if not config_path.exists():
            logger.error("Config file not found: %s", config_path)
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, "rb") as f:
            _CONFIG_CACHE = tomllib.load(f)
            logger.debug("Configuration loaded successfully")

    return _CONFIG_CACHE


def get_typed_config() -> AppConfig:
    """
    Get typed configuration (lazy-loaded, validated, cached).

    Returns:
        Validated AppConfig instance with type-safe access

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValidationError: If config doesn't match expected schema
    """
    global _TYPED_CONFIG_CACHE

    if _TYPED_CONFIG_CACHE is None:
        _TYPED_CONFIG_CACHE = AppConfig(**get_config())
        logger.debug("Configuration validated with Pydantic models")

    return _TYPED_CONFIG_CACHE


def reset_config_cache() -> None:
    """Forget cached configuration so the next access re-reads the file; logging is re-applied at once."""
    global _CONFIG_CACHE, _TYPED_CONFIG_CACHE
    _CONFIG_CACHE = None
    _TYPED_CONFIG_CACHE = None
    reload_logging_config()


def get_logging_config() -> LoggingConfig:
    """Get typed logging configuration section."""
    return get_typed_config().logging


def get_collector_config() -> CollectorConfig:
    """Get typed collector configuration section."""
    return get_typed_config().collector


def get_batch_buffer_config() -> BatchBufferConfig:
    """Get typed batch buffer configuration section."""
    return get_typed_config().batch_buffer


def get_persistence_config() -> PersistenceConfig:
    """Get typed persistence configuration section."""
    return get_typed_config().persistence


def get_scheduler_config() -> SchedulerConfig:
    """Get typed scheduler configuration section."""
    return get_typed_config().scheduler


def get_identity_config() -> IdentityConfig:
    return get_typed_config().identity


def get_server_config() -> ServerConfig:
    return get_typed_config().server
