"""Factories for the persistence handles.

Handles are built explicitly by the process entry point and passed to
whoever needs them; nothing here caches a process-wide instance.
"""

from sharedUtils.config.models import PersistenceConfig
from sharedUtils.logger.logger import get_logger
from sharedUtils.persistence.base_gateway import PersistenceGateway
from sharedUtils.persistence.http_gateway import HttpPersistenceGateway
from sharedUtils.persistence.quarantine import MemoryQuarantine, Quarantine, RedisQuarantine

logger = get_logger(__name__)


def build_gateway(config: PersistenceConfig) -> PersistenceGateway:
    """Create an unstarted HTTP gateway for the configured store."""
    logger.info("Initializing HttpPersistenceGateway for %s", config.api_endpoint)
    return HttpPersistenceGateway(config)


def build_quarantine(config: PersistenceConfig) -> Quarantine:
    """
    Create the configured quarantine.

    A Redis quarantine is pinged first; when Redis is unreachable the
    process falls back to an in-memory quarantine and says so.
    """
    if config.quarantine == "memory":
        return MemoryQuarantine()

    quarantine = RedisQuarantine(config)
    try:
        quarantine.redis_client.ping()
        logger.info("Quarantine connected to Redis at %s:%s", config.redis_host, config.redis_port)
        return quarantine
    except Exception as e:
        logger.error("Redis unreachable (%s) - quarantined batches will only be kept in memory", e)
        quarantine.close()
        return MemoryQuarantine()
