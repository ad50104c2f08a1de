"""
Quarantine for batches the pipeline has given up on.

Batches rejected by the store, batches whose retries ran out and
batches still outstanding at shutdown end up here instead of vanishing.

Envelope (JSON):
    {
        "batch_id": str,
        "reason": str,            # rejected | retries_exhausted | shutdown | identity_changed
        "error": str | None,
        "user_id": str | None,
        "quarantined_at": float,  # Unix timestamp
        "payload": str            # Batch serialised as JSON (without the token)
    }
"""

import json
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import redis
from pipeline.batch_buffer import Batch
from sharedUtils.config.models import PersistenceConfig
from sharedUtils.logger.logger import get_logger

logger = get_logger(__name__)


def build_envelope(batch: Batch, reason: str, error: Optional[str]) -> Dict[str, Any]:
    return {
        "batch_id": batch.batch_id,
        "reason": reason,
        "error": error,
        "user_id": batch.identity.user_id if batch.identity else None,
        "quarantined_at": time.time(),
        "payload": batch.model_dump_json(exclude={"identity"}),
    }


class Quarantine(ABC):
    """Where dropped batches are kept for inspection or manual replay."""

    @abstractmethod
    def put(self, batch: Batch, reason: str, error: Optional[str] = None) -> bool:
        """Store a batch. Returns False if it could not be stored."""

    @abstractmethod
    def count(self) -> int:
        """Number of quarantined batches."""

    @abstractmethod
    def entries(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Newest envelopes first."""

    def close(self) -> None:
        pass


class MemoryQuarantine(Quarantine):
    def __init__(self):
        self._lock = threading.Lock()
        self._entries: List[Dict[str, Any]] = []

    def put(self, batch: Batch, reason: str, error: Optional[str] = None) -> bool:
        with self._lock:
            self._entries.insert(0, build_envelope(batch, reason, error))
        logger.warning("Quarantined batch %s (%d samples, reason=%s)", batch.batch_id, len(batch), reason)
        return True

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def entries(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._entries[:limit])


class RedisQuarantine(Quarantine):
    """
    Redis list of quarantine envelopes.

    LPUSH puts the newest envelope at the head, so LRANGE 0..n reads the
    most recent first.
    """

    QUARANTINE_KEY = "telemetry:quarantine"

    def __init__(self, config: PersistenceConfig, client: Optional[redis.Redis] = None):
        self.redis_client = client or redis.Redis(
            host=config.redis_host,
            port=config.redis_port,
            db=config.redis_db,
            password=config.redis_password,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
        )
        logger.debug("RedisQuarantine using %s:%s", config.redis_host, config.redis_port)

    def put(self, batch: Batch, reason: str, error: Optional[str] = None) -> bool:
        envelope = build_envelope(batch, reason, error)
        try:
            self.redis_client.lpush(self.QUARANTINE_KEY, json.dumps(envelope))
        except redis.RedisError as e:
            logger.error("Could not quarantine batch %s (%d samples lost): %s",
                         batch.batch_id, len(batch), str(e))
            return False

        logger.warning("Quarantined batch %s (%d samples, reason=%s)", batch.batch_id, len(batch), reason)
        return True

    def count(self) -> int:
        try:
            return self.redis_client.llen(self.QUARANTINE_KEY)
        except redis.RedisError as e:
            logger.error("Failed to read quarantine size: %s", str(e))
            return 0

    def entries(self, limit: int = 100) -> List[Dict[str, Any]]:
        try:
            raw = self.redis_client.lrange(self.QUARANTINE_KEY, 0, limit - 1)
        except redis.RedisError as e:
            logger.error("Failed to read quarantine: %s", str(e))
            return []

        envelopes = []
        for item in raw:
            try:
                envelopes.append(json.loads(item))
            except json.JSONDecodeError:
                logger.warning("Skipping malformed quarantine envelope")
        return envelopes

    def close(self) -> None:
        self.redis_client.close()
