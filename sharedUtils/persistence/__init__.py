"""
Persistence Module

Gateways delivering sample batches to the remote store, plus the
quarantine holding batches the pipeline could not deliver.
"""

from sharedUtils.persistence.base_gateway import (
    AggregateStats,
    HourlyBucket,
    PersistenceGateway,
    PersistenceOutcome,
)
from sharedUtils.persistence.http_gateway import HttpPersistenceGateway
from sharedUtils.persistence.memory_gateway import InMemoryPersistenceGateway
from sharedUtils.persistence.quarantine import MemoryQuarantine, Quarantine, RedisQuarantine
from sharedUtils.persistence.manager import build_gateway, build_quarantine

__all__ = [
    'AggregateStats',
    'HourlyBucket',
    'PersistenceGateway',
    'PersistenceOutcome',
    'HttpPersistenceGateway',
    'InMemoryPersistenceGateway',
    'Quarantine',
    'MemoryQuarantine',
    'RedisQuarantine',
    'build_gateway',
    'build_quarantine',
]
