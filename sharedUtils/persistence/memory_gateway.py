"""In-process stand-in for the remote store, used offline and in tests."""

import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from statistics import fmean
from typing import Deque, Dict, List, Optional, Type
from collectors.base_data_collector import Sample
from pipeline.batch_buffer import Batch
from pipeline.errors import PersistenceError, Unauthenticated
from pipeline.identity import Identity
from sharedUtils.logger.logger import get_logger
from sharedUtils.persistence.base_gateway import (
    AGGREGATE_METRICS,
    DEFAULT_HISTORY_LIMIT,
    AggregateStats,
    HourlyBucket,
    MetricSummary,
    OutcomeKind,
    PersistenceGateway,
    PersistenceOutcome,
    require_batch,
)

logger = get_logger(__name__)


class InMemoryPersistenceGateway(PersistenceGateway):
    """
    Stores accepted samples per user in a list.

    ``fail_next(SomeError, times=n)`` scripts the next n persist() calls to
    raise, which is how tests drive transient outages and rejections.
    Every persist() call, failed or not, is appended to ``calls``.
    """

    def __init__(self, valid_tokens: Optional[Dict[str, str]] = None):
        self._lock = threading.Lock()
        self._rows: Dict[str, List[Sample]] = {}
        self._devices: Dict[str, Dict[str, dict]] = {}
        self._failures: Deque[Type[PersistenceError]] = deque()
        self.valid_tokens = valid_tokens
        self.calls: List[Batch] = []
        self.online = True

    def fail_next(self, error: Type[PersistenceError], times: int = 1) -> None:
        with self._lock:
            self._failures.extend([error] * times)

    def samples_for(self, user_id: str) -> List[Sample]:
        with self._lock:
            return list(self._rows.get(user_id, []))

    def _authorize(self, identity: Optional[Identity], batch: Optional[Batch] = None) -> None:
        if identity is None:
            raise Unauthenticated("No identity available", batch)
        if self.valid_tokens is not None and self.valid_tokens.get(identity.access_token) != identity.user_id:
            raise Unauthenticated(f"Token refused for user {identity.user_id}", batch)

    def persist(self, batch: Batch, identity: Optional[Identity]) -> PersistenceOutcome:
        require_batch(batch)
        with self._lock:
            self.calls.append(batch)
            failure = self._failures.popleft() if self._failures else None

        self._authorize(identity, batch)
        if failure is not None:
            raise failure(f"scripted {failure.__name__}", batch)

        with self._lock:
            self._rows.setdefault(identity.user_id, []).extend(batch.samples)
        logger.debug("Stored batch %s (%d samples) for user %s",
                     batch.batch_id, len(batch), identity.user_id)
        return PersistenceOutcome(kind=OutcomeKind.SUCCEEDED, batch=batch)

    def _select(self, identity: Identity, device_id: Optional[str],
                since: Optional[datetime] = None, until: Optional[datetime] = None) -> List[Sample]:
        self._authorize(identity)
        device_id = device_id or identity.device_id
        rows = self.samples_for(identity.user_id)
        return [
            s for s in rows
            if (device_id is None or s.device_id == device_id)
            and (since is None or s.timestamp >= since)
            and (until is None or s.timestamp <= until)
        ]

    def fetch_history(self, identity: Identity, device_id: Optional[str] = None,
                      start: Optional[datetime] = None, end: Optional[datetime] = None,
                      limit: int = DEFAULT_HISTORY_LIMIT) -> List[Sample]:
        rows = self._select(identity, device_id, start, end)
        rows.sort(key=lambda s: s.timestamp, reverse=True)
        return rows[:limit]

    def fetch_aggregates(self, identity: Identity, device_id: Optional[str] = None,
                         window_hours: float = 24) -> AggregateStats:
        since = datetime.now(timezone.utc) - timedelta(hours=window_hours)
        rows = self._select(identity, device_id, since)
        metrics = {}
        for name in AGGREGATE_METRICS:
            values = [getattr(s, name) for s in rows]
            metrics[name] = MetricSummary(
                avg=fmean(values) if values else None,
                min=min(values) if values else None,
                max=max(values) if values else None,
            )
        return AggregateStats(
            device_id=device_id,
            window_hours=window_hours,
            count=len(rows),
            metrics=metrics,
            water_bottles_total=sum(s.water_bottles_equivalent for s in rows),
        )

    def fetch_hourly(self, identity: Identity, device_id: Optional[str] = None,
                     window_hours: float = 24) -> List[HourlyBucket]:
        since = datetime.now(timezone.utc) - timedelta(hours=window_hours)
        buckets: Dict[datetime, List[Sample]] = {}
        for sample in self._select(identity, device_id, since):
            hour = sample.timestamp.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
            buckets.setdefault(hour, []).append(sample)

        return [
            HourlyBucket(
                hour=hour,
                count=len(samples),
                averages={name: fmean(getattr(s, name) for s in samples) for name in AGGREGATE_METRICS},
            )
            for hour, samples in sorted(buckets.items())
        ]

    def register_device(self, identity: Identity, device_id: str, device_name: str,
                        device_type: str = "desktop", os_name: str = "") -> Dict:
        self._authorize(identity)
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            devices = self._devices.setdefault(identity.user_id, {})
            device = devices.get(device_id)
            if device is None:
                device = {"device_id": device_id, "device_name": device_name,
                          "device_type": device_type, "os": os_name, "is_active": True}
                devices[device_id] = device
            device["last_sync"] = now
            return dict(device)

    def check_connection(self) -> bool:
        return self.online
