"""Configuration module."""

from sharedUtils.config.loader import (
    load_config,
    get_config,
    get_typed_config,
    reset_config_cache,
    get_logging_config,
    get_collector_config,
    get_batch_buffer_config,
    get_persistence_config,
    get_scheduler_config,
    get_identity_config,
    get_server_config,
)
from sharedUtils.config.models import (
    AppConfig,
    LoggingConfig,
    CollectorConfig,
    BatchBufferConfig,
    PersistenceConfig,
    SchedulerConfig,
    IdentityConfig,
    ServerConfig,
)

__all__ = [
    'load_config',
    'get_config',
    'get_typed_config',
    'reset_config_cache',
    'get_logging_config',
    'get_collector_config',
    'get_batch_buffer_config',
    'get_persistence_config',
    'get_scheduler_config',
    'get_identity_config',
    'get_server_config',
    'AppConfig',
    'LoggingConfig',
    'CollectorConfig',
    'BatchBufferConfig',
    'PersistenceConfig',
    'SchedulerConfig',
    'IdentityConfig',
    'ServerConfig',
]
