"""
Base Persistence Gateway Interface

Abstract base class for delivering batches to a remote store and reading
history back. Implementations can be swapped (HTTP, in-memory) without
changing the scheduler.

A gateway never keeps a batch beyond one persist() call: on failure the
batch rides back to the caller on the raised PersistenceError.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel

from collectors.base_data_collector import Sample
from pipeline.batch_buffer import Batch
from pipeline.identity import Identity

DEFAULT_HISTORY_LIMIT = 100

# Metrics the store aggregates server-side
AGGREGATE_METRICS = (
    "cpu_usage",
    "memory_usage",
    "gpu_usage",
    "disk_usage",
    "network_download",
    "network_upload",
)


class OutcomeKind(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PersistenceOutcome(BaseModel):
    """Result of one flush attempt."""
    kind: OutcomeKind
    batch: Batch
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.kind is OutcomeKind.SUCCEEDED

    @classmethod
    def failed(cls, batch: Batch, error: str) -> "PersistenceOutcome":
        return cls(kind=OutcomeKind.FAILED, batch=batch, error=error)


class MetricSummary(BaseModel):
    avg: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None


class AggregateStats(BaseModel):
    """Statistics over a trailing window, as computed by the store."""
    device_id: Optional[str] = None
    window_hours: float
    count: int
    metrics: Dict[str, MetricSummary]
    water_bottles_total: float = 0.0


class HourlyBucket(BaseModel):
    hour: datetime
    count: int
    averages: Dict[str, Optional[float]]


def require_batch(batch: Optional[Batch]) -> None:
    """Fail fast on an empty batch, before any remote call."""
    if batch is None or len(batch.samples) == 0:
        raise ValueError("persist() requires a non-empty batch")


class PersistenceGateway(ABC):
    """Abstract base class for remote store clients."""

    @abstractmethod
    def persist(self, batch: Batch, identity: Optional[Identity]) -> PersistenceOutcome:
        """
        Deliver a batch under an identity.

        Returns:
            A succeeded PersistenceOutcome once the store acknowledged the batch
            (failures are raised, never returned; callers record them with
            PersistenceOutcome.failed)

        Raises:
            ValueError: If the batch is empty
            Unauthenticated: If no identity is available or it was refused
            TransientStoreError: On network or server-side failure
            RejectedByStore: On a permanent validation failure
        """

    @abstractmethod
    def fetch_history(self, identity: Identity, device_id: Optional[str] = None,
                      start: Optional[datetime] = None, end: Optional[datetime] = None,
                      limit: int = DEFAULT_HISTORY_LIMIT) -> List[Sample]:
        """Samples newest first; an empty list when the identity has no data."""

    @abstractmethod
    def fetch_aggregates(self, identity: Identity, device_id: Optional[str] = None,
                         window_hours: float = 24) -> AggregateStats:
        """Count, mean, min and max per metric over the trailing window."""

    @abstractmethod
    def fetch_hourly(self, identity: Identity, device_id: Optional[str] = None,
                     window_hours: float = 24) -> List[HourlyBucket]:
        """Per-hour averages over the trailing window, oldest hour first."""

    @abstractmethod
    def register_device(self, identity: Identity, device_id: str, device_name: str,
                        device_type: str = "desktop", os_name: str = "") -> Dict:
        """Create or refresh the device record of the identity."""

    def check_connection(self) -> bool:
        """True when the store is reachable."""
        return True

    def start(self) -> None:
        """Open connections. Called once before the first persist."""

    def stop(self) -> None:
        """Close connections."""

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False
