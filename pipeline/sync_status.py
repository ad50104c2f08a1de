"""Observable counters and recent samples for a dashboard."""

import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional
from collectors.base_data_collector import Sample

StatusListener = Callable[[Dict[str, Any]], None]

COUNTERS = (
    "total_collected",
    "total_saved",
    "total_errors",
    "total_skipped",
    "total_discarded",
    "total_evicted",
    "batches_persisted",
    "batches_rejected",
    "batches_lost",
)


class SyncStatus:
    """
    Thread-safe state of the pipeline as a UI would show it.

    Every error path of the scheduler lands here as a counter bump, so no
    failure disappears without a visible trace. ``last_sync_failed`` is
    raised by rejected or lost batches and cleared by the next success.
    """

    def __init__(self, realtime_window: int = 60):
        self._lock = threading.Lock()
        self._listeners: List[StatusListener] = []
        self._counters = {name: 0 for name in COUNTERS}
        self._realtime: Deque[Sample] = deque(maxlen=max(realtime_window, 1))
        self.state = "idle"
        self.is_online = True
        self.pending_batches = 0
        self.buffered_samples = 0
        self.last_collection: Optional[datetime] = None
        self.last_save: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.last_sync_failed = False
        self.last_anomaly: Optional[Dict[str, Any]] = None

    def subscribe(self, listener: StatusListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def __getitem__(self, counter: str) -> int:
        with self._lock:
            return self._counters[counter]

    def update(self, increments: Optional[Dict[str, int]] = None, **fields: Any) -> None:
        """Add to counters and/or set attributes, then notify listeners."""
        with self._lock:
            for name, amount in (increments or {}).items():
                self._counters[name] += amount
            for name, value in fields.items():
                if not hasattr(self, name):
                    raise AttributeError(f"Unknown status field: {name}")
                setattr(self, name, value)
            listeners = list(self._listeners)
            snapshot = self._snapshot_locked()

        for listener in listeners:
            listener(snapshot)

    def record_sample(self, sample: Sample) -> None:
        with self._lock:
            self._realtime.append(sample)
        self.update({"total_collected": 1}, last_collection=sample.timestamp)

    def record_anomaly(self, kind: str, value: float) -> None:
        self.update(last_anomaly={"type": kind, "value": value,
                                  "timestamp": datetime.now(timezone.utc)})

    def record_saved(self, samples: int) -> None:
        self.update({"total_saved": samples, "batches_persisted": 1},
                    last_save=datetime.now(timezone.utc), last_sync_failed=False,
                    is_online=True)

    def record_failure(self, message: str, counter: Optional[str] = None, samples: int = 0,
                       sync_failed: bool = False) -> None:
        increments = {"total_errors": 1}
        if counter:
            increments[counter] = 1
        if samples:
            increments["total_discarded"] = samples
        fields: Dict[str, Any] = {"last_error": message}
        if sync_failed:
            fields["last_sync_failed"] = True
        self.update(increments, **fields)

    def realtime(self) -> List[Sample]:
        with self._lock:
            return list(self._realtime)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> Dict[str, Any]:
        return {
            **self._counters,
            "state": self.state,
            "is_online": self.is_online,
            "pending_batches": self.pending_batches,
            "buffered_samples": self.buffered_samples,
            "last_collection": self.last_collection,
            "last_save": self.last_save,
            "last_error": self.last_error,
            "last_sync_failed": self.last_sync_failed,
            "last_anomaly": self.last_anomaly,
        }
