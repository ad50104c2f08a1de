"""
In-memory batch buffer.

Samples accumulate in capture order until a size or age threshold is
crossed; the scheduler then drains the whole buffer into one Batch.
The internal deque is swapped under a lock, so an append racing a
drain lands either in the drained batch or in the next one, never in
both and never nowhere.
"""

import threading
import time
import uuid
import warnings
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field
from collectors.base_data_collector import Sample
from pipeline.errors import BufferOverflow
from pipeline.identity import Identity
from sharedUtils.logger.logger import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_BATCH_SIZE = 300     # One sample per second for five minutes
DEFAULT_MAX_BATCH_AGE = 300.0    # Seconds
DEFAULT_MAX_BUFFER_SAMPLES = 3600


class FlushReason(str, Enum):
    SIZE = "size"
    TIME = "time"
    FORCED = "forced"


class Batch(BaseModel):
    """
    Ordered samples flushed together.

    Attributes:
        batch_id: Identifier used in logs and quarantine envelopes
        samples: Samples in capture order, never empty
        created_at: When the batch was drained
        reason: What triggered the flush
        identity: Identity context the samples belong to, if any
    """
    model_config = ConfigDict(frozen=True)

    batch_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    samples: Tuple[Sample, ...] = Field(min_length=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: FlushReason = FlushReason.FORCED
    identity: Optional[Identity] = None

    def __len__(self) -> int:
        return len(self.samples)

    def merged_with(self, other: 'Batch') -> 'Batch':
        """Return a batch with this batch's samples followed by ``other``'s."""
        return self.model_copy(update={"samples": self.samples + other.samples})

    def with_identity(self, identity: Optional[Identity]) -> 'Batch':
        return self.model_copy(update={"identity": identity})


class BatchBuffer:
    """
    Thread-safe sample accumulator with size and age flush thresholds.

    Args:
        max_batch_size: append() reports a flush once this many samples are buffered
        max_batch_age: append()/is_due() report a flush once the oldest
            buffered sample is this many seconds old
        max_buffer_samples: hard ceiling; the oldest sample is evicted past it
        clock: monotonic time source in seconds
    """

    def __init__(self, max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
                 max_batch_age: float = DEFAULT_MAX_BATCH_AGE,
                 max_buffer_samples: int = DEFAULT_MAX_BUFFER_SAMPLES,
                 clock: Callable[[], float] = time.monotonic):
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        if max_buffer_samples < max_batch_size:
            raise ValueError("max_buffer_samples must be >= max_batch_size")

        self.max_batch_size = max_batch_size
        self.max_batch_age = max_batch_age
        self.max_buffer_samples = max_buffer_samples
        self._clock = clock

        self._lock = threading.Lock()
        self._samples: Deque[Sample] = deque()
        self._first_append_at: Optional[float] = None
        self.overflow_count = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def age(self) -> float:
        """Seconds since the oldest buffered sample was appended (0 when empty)."""
        with self._lock:
            return self._age_locked()

    def _age_locked(self) -> float:
        if self._first_append_at is None:
            return 0.0
        return self._clock() - self._first_append_at

    def _threshold_locked(self) -> Optional[FlushReason]:
        if not self._samples:
            return None
        if len(self._samples) >= self.max_batch_size:
            return FlushReason.SIZE
        if self._age_locked() >= self.max_batch_age:
            return FlushReason.TIME
        return None

    def pending_reason(self) -> Optional[FlushReason]:
        """Which threshold is currently crossed, if any."""
        with self._lock:
            return self._threshold_locked()

    def is_due(self) -> bool:
        return self.pending_reason() is not None

    def append(self, sample: Sample) -> bool:
        """
        Add a sample to the tail of the current batch.

        Returns:
            True if a flush threshold (size or age) is crossed after the append

        Never raises. When the hard ceiling is hit, the oldest sample is
        evicted and a BufferOverflow warning is emitted.
        """
        evicted = None
        with self._lock:
            if self._first_append_at is None:
                self._first_append_at = self._clock()

            if len(self._samples) >= self.max_buffer_samples:
                evicted = self._samples.popleft()
                self.overflow_count += 1

            self._samples.append(sample)
            crossed = self._threshold_locked() is not None

        if evicted is not None:
            logger.warning("Buffer full (%d samples): evicted sample taken at %s",
                           self.max_buffer_samples, evicted.timestamp.isoformat())
            warnings.warn(
                f"buffer ceiling of {self.max_buffer_samples} samples reached, oldest sample dropped",
                BufferOverflow,
                stacklevel=2,
            )

        return crossed

    def drain_for_flush(self, reason: Optional[FlushReason] = None,
                        identity: Optional[Identity] = None) -> Optional[Batch]:
        """
        Atomically remove every buffered sample and return them as one Batch.

        Args:
            reason: Flush trigger; defaults to the crossed threshold, else FORCED
            identity: Identity context stamped on the batch

        Returns:
            The drained Batch, or None when the buffer is empty
        """
        with self._lock:
            if not self._samples:
                return None
            detected = self._threshold_locked()
            drained, self._samples = self._samples, deque()
            self._first_append_at = None

        batch = Batch(
            samples=tuple(drained),
            reason=reason or detected or FlushReason.FORCED,
            identity=identity,
        )
        logger.debug("Drained batch %s: %d samples (reason=%s)",
                     batch.batch_id, len(batch), batch.reason.value)
        return batch

    def force_flush_now(self, reason: FlushReason = FlushReason.FORCED,
                        identity: Optional[Identity] = None) -> Optional[Batch]:
        """Drain immediately regardless of thresholds."""
        return self.drain_for_flush(reason=reason, identity=identity)

    def clear(self) -> int:
        """Discard every buffered sample and return how many were dropped."""
        with self._lock:
            dropped = len(self._samples)
            self._samples = deque()
            self._first_append_at = None
        return dropped
