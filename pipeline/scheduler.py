"""
Pipeline scheduler.

Owns the tick timer, the batch buffer and a single flush worker, and
reacts to identity transitions.

States:
    IDLE      no identity, refused credentials, or store unreachable
              for longer than the grace period; the tick timer is off
    SAMPLING  tick timer on, buffer accepting samples
    FLUSHING  a persist call is in flight; sampling continues
    STOPPED   terminal

Flow:
    1. tick() samples once and appends to the buffer
    2. A crossed threshold (or a detected anomaly) drains the buffer into
       a Batch stamped with the current identity and queues it
    3. The worker persists queued batches one at a time, oldest first
    4. TransientStoreError keeps the batch and retries it after an
       exponential backoff, merged with every batch queued behind it
    5. RejectedByStore moves the batch to the quarantine
    6. Unauthenticated keeps the batch and pauses until the next login
"""

import threading
import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, Optional
from collectors.base_data_collector import BaseDataCollector, Sample
from collectors.energy import detect_anomaly
from pipeline.backoff import RetryPolicy
from pipeline.batch_buffer import Batch, BatchBuffer, FlushReason
from pipeline.errors import (
    MetricsUnavailable,
    RejectedByStore,
    TransientStoreError,
    Unauthenticated,
)
from pipeline.identity import Identity, IdentityProvider
from pipeline.sync_status import SyncStatus
from sharedUtils.logger.logger import get_logger
from sharedUtils.persistence.base_gateway import PersistenceGateway, PersistenceOutcome
from sharedUtils.persistence.quarantine import MemoryQuarantine, Quarantine

logger = get_logger(__name__)

WORKER_JOIN_TIMEOUT = 1.0  # Seconds granted to the worker after the shutdown grace period


class PipelineState(str, Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    FLUSHING = "flushing"
    STOPPED = "stopped"


class PipelineScheduler:
    """
    Supervisor of the sampling and batched persistence pipeline.

    Args:
        collector: Sampler queried on every tick
        buffer: Batch buffer owned by this scheduler
        gateway: Remote store client
        identity_provider: Source of the identity context
        quarantine: Destination of batches that cannot be delivered
        retry_policy: Backoff for transient failures
        status: Observable counters for a UI
        tick_interval: Seconds between two ticks
        connectivity_grace_period: Seconds of consecutive transient failures
            before sampling pauses
        shutdown_timeout: Seconds granted to the final flush
        flush_on_anomaly: Force a flush when a sample shows a spike
    """

    def __init__(self, collector: BaseDataCollector, buffer: BatchBuffer,
                 gateway: PersistenceGateway, identity_provider: IdentityProvider,
                 quarantine: Optional[Quarantine] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 status: Optional[SyncStatus] = None,
                 tick_interval: float = 1.0,
                 connectivity_grace_period: float = 60.0,
                 shutdown_timeout: float = 10.0,
                 flush_on_anomaly: bool = True,
                 monotonic: Callable[[], float] = time.monotonic):
        self.collector = collector
        self.buffer = buffer
        self.gateway = gateway
        self.identity_provider = identity_provider
        self.quarantine = quarantine or MemoryQuarantine()
        self.retry_policy = retry_policy or RetryPolicy()
        self.status = status or SyncStatus()
        self.tick_interval = tick_interval
        self.connectivity_grace_period = connectivity_grace_period
        self.shutdown_timeout = shutdown_timeout
        self.flush_on_anomaly = flush_on_anomaly
        self._monotonic = monotonic

        self._state = PipelineState.IDLE
        self._state_lock = threading.RLock()
        self._identity: Optional[Identity] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._started = False

        # Flush queue, guarded by _cond
        self._cond = threading.Condition()
        self._pending: Deque[Batch] = deque()
        self._held: Optional[Batch] = None
        self._in_flight: Optional[Batch] = None
        self._last_outcome: Optional[PersistenceOutcome] = None
        self._attempts = 0
        self._retry_at = 0.0
        self._failing_since: Optional[float] = None
        self._paused_unauthenticated = False
        self._offline = False
        self._worker_exit = False

        self._tick_thread: Optional[threading.Thread] = None
        self._tick_stop: Optional[threading.Event] = None
        self._worker_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------ state

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def last_outcome(self) -> Optional[PersistenceOutcome]:
        """Result of the most recent delivery attempt."""
        return self._last_outcome

    def _set_state(self, state: PipelineState) -> None:
        with self._state_lock:
            if self._state is state or self._state is PipelineState.STOPPED:
                return
            logger.info("Pipeline state %s -> %s", self._state.value, state.value)
            self._state = state
        self.status.update(state=state.value)

    # -------------------------------------------------------------- lifecycle

    def start(self) -> None:
        """Start the flush worker and, if someone is logged in, the tick timer."""
        with self._state_lock:
            if self._state is PipelineState.STOPPED:
                raise RuntimeError("A stopped pipeline cannot be restarted")
            if self._started:
                logger.warning("Pipeline already started")
                return
            self._started = True

            self._worker_thread = threading.Thread(target=self._worker_loop, name="FlushWorker", daemon=True)
            self._worker_thread.start()

            self._unsubscribe = self.identity_provider.subscribe(self._on_identity_change)
            identity = self.identity_provider.current()
            if identity is not None:
                self._identity = identity
                self._set_state(PipelineState.SAMPLING)
                self._start_ticking()
            else:
                logger.info("No identity yet - waiting for authentication")

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Final forced flush, then release the timer and the worker.

        Batches still undelivered after ``timeout`` (default
        shutdown_timeout) are logged as lost and quarantined.

        Returns:
            True if everything buffered was delivered
        """
        timeout = self.shutdown_timeout if timeout is None else timeout

        with self._state_lock:
            if self._state is PipelineState.STOPPED:
                return True
            if self._unsubscribe:
                self._unsubscribe()
                self._unsubscribe = None
            tick_thread = self._stop_ticking()
            self._drain_buffer(FlushReason.FORCED, self._identity)

        if tick_thread and tick_thread is not threading.current_thread():
            tick_thread.join(timeout=self.tick_interval + 1)

        with self._cond:
            # One immediate attempt for a batch waiting out its backoff
            self._retry_at = 0.0
            self._cond.notify_all()

        delivered = self.flush_pending(timeout)

        with self._cond:
            self._worker_exit = True
            leftovers = ([self._held] if self._held else []) + list(self._pending)
            if self._in_flight is not None and self._in_flight is not self._held:
                leftovers.insert(0, self._in_flight)
            self._held = None
            self._pending.clear()
            self._cond.notify_all()

        if self._worker_thread and self._worker_thread.is_alive():
            self._worker_thread.join(timeout=WORKER_JOIN_TIMEOUT)

        for batch in leftovers:
            logger.error("Shutdown timeout: batch %s (%d samples) not delivered and counted as lost",
                         batch.batch_id, len(batch))
            self.quarantine.put(batch, "shutdown", "not delivered before shutdown timeout")
            self.status.record_failure(f"batch {batch.batch_id} lost at shutdown",
                                       counter="batches_lost", sync_failed=True)

        with self._state_lock:
            logger.info("Pipeline state %s -> %s", self._state.value, PipelineState.STOPPED.value)
            self._state = PipelineState.STOPPED
        self.status.update(state=PipelineState.STOPPED.value, pending_batches=0)
        return delivered and not leftovers

    def _start_ticking(self) -> None:
        if self._tick_thread and self._tick_thread.is_alive() and not self._tick_stop.is_set():
            return
        self._tick_stop = threading.Event()
        self._tick_thread = threading.Thread(target=self._tick_loop, args=(self._tick_stop,),
                                             name="TickTimer", daemon=True)
        self._tick_thread.start()

    def _stop_ticking(self) -> Optional[threading.Thread]:
        """Signal the tick thread to exit; the caller joins it outside any lock."""
        if self._tick_stop is not None:
            self._tick_stop.set()
        thread, self._tick_thread = self._tick_thread, None
        return thread

    def _tick_loop(self, stop_event: threading.Event) -> None:
        logger.info("Tick timer started (interval=%.2fs)", self.tick_interval)
        next_at = self._monotonic() + self.tick_interval

        while not stop_event.wait(max(0.0, next_at - self._monotonic())):
            try:
                self.tick()
            except Exception as e:
                logger.error("Unexpected error during tick: %s", e, exc_info=True)
                self.status.record_failure(f"tick failed: {e}")

            next_at += self.tick_interval
            if next_at < self._monotonic():
                # Fell behind; skip the missed ticks instead of bursting
                next_at = self._monotonic() + self.tick_interval

        logger.info("Tick timer stopped")

    # --------------------------------------------------------------- sampling

    def tick(self) -> Optional[Sample]:
        """
        One sampling step.

        Returns:
            The appended sample, or None when the tick was skipped
        """
        if self._state not in (PipelineState.SAMPLING, PipelineState.FLUSHING):
            logger.debug("Tick ignored in state %s", self._state.value)
            return None

        try:
            sample = self.collector.sample_once()
        except MetricsUnavailable as e:
            logger.warning("Metrics unavailable, tick skipped: %s", e)
            self.status.update({"total_skipped": 1}, last_error=str(e))
            with self._state_lock:
                if self.buffer.is_due():
                    self._drain_buffer(None, self._identity)
            return None

        with self._state_lock:
            if self._state not in (PipelineState.SAMPLING, PipelineState.FLUSHING) or self._identity is None:
                logger.warning("Sample discarded: no authenticated identity")
                self.status.update({"total_discarded": 1})
                return None

            self.status.record_sample(sample)
            evicted_before = self.buffer.overflow_count
            crossed = self.buffer.append(sample)
            evicted = self.buffer.overflow_count - evicted_before
            if evicted:
                self.status.update({"total_evicted": evicted})

            anomaly = detect_anomaly(sample) if self.flush_on_anomaly else None
            if anomaly:
                logger.warning("Anomaly %s detected - flushing immediately", anomaly)
                self.status.record_anomaly(anomaly, _anomaly_value(sample, anomaly))
                self._drain_buffer(FlushReason.FORCED, self._identity)
            elif crossed:
                self._drain_buffer(None, self._identity)
            else:
                self.status.update(buffered_samples=len(self.buffer))

        return sample

    def flush_now(self, reason: FlushReason = FlushReason.FORCED) -> Optional[Batch]:
        """Drain the buffer right away and queue the batch."""
        with self._state_lock:
            return self._drain_buffer(reason, self._identity)

    def _drain_buffer(self, reason: Optional[FlushReason], identity: Optional[Identity]) -> Optional[Batch]:
        if identity is None:
            dropped = self.buffer.clear()
            if dropped:
                logger.warning("Discarding %d buffered samples: no identity to attribute them to", dropped)
                self.status.update({"total_discarded": dropped})
            return None

        batch = self.buffer.drain_for_flush(reason=reason, identity=identity)
        self.status.update(buffered_samples=0)
        if batch is not None:
            self._enqueue(batch)
        return batch

    def _enqueue(self, batch: Batch) -> None:
        with self._cond:
            self._pending.append(batch)
            pending = len(self._pending)
            self._cond.notify_all()
        logger.debug("Queued batch %s (%d samples, reason=%s)", batch.batch_id, len(batch), batch.reason.value)
        self.status.update(pending_batches=pending)

    # --------------------------------------------------------------- identity

    def _on_identity_change(self, old: Optional[Identity], new: Optional[Identity]) -> None:
        with self._state_lock:
            if self._state is PipelineState.STOPPED:
                return

            if new is None or (old is not None and old.user_id != new.user_id):
                # The old context is flushed while its token is still usable
                self._drain_buffer(FlushReason.FORCED, self._identity or old)

            self._identity = new

            if new is None:
                thread = self._stop_ticking()
                self._set_state(PipelineState.IDLE)
            else:
                thread = None
                self._resume_after_login(new)
                if self._started and not self._offline:
                    self._set_state(PipelineState.SAMPLING)
                    self._start_ticking()

        if thread and thread is not threading.current_thread():
            thread.join(timeout=self.tick_interval + 1)

    def _resume_after_login(self, identity: Identity) -> None:
        """Re-arm batches that were refused for missing or stale credentials."""
        with self._cond:
            if not self._paused_unauthenticated:
                return
            self._paused_unauthenticated = False

            held, self._held = self._held, None
            retagged: Deque[Batch] = deque()
            for batch in ([held] if held else []) + list(self._pending):
                if batch.identity is None or batch.identity.user_id == identity.user_id:
                    retagged.append(batch.with_identity(identity))
                else:
                    logger.warning("Batch %s belongs to user %s, not %s - quarantined",
                                   batch.batch_id, batch.identity.user_id, identity.user_id)
                    self.quarantine.put(batch, "identity_changed", "owner logged out before delivery")
                    self.status.record_failure(f"batch {batch.batch_id} could not be attributed",
                                               counter="batches_lost", sync_failed=True)
            self._pending = retagged
            self._attempts = 0
            self._retry_at = 0.0
            self._cond.notify_all()
        logger.info("Credentials renewed for user %s - resuming flushes", identity.user_id)

    # ----------------------------------------------------------------- worker

    def flush_pending(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every queued batch has been handled.

        Returns:
            True if the queue emptied, False on timeout or while paused
            for authentication
        """
        with self._cond:
            return self._cond.wait_for(
                lambda: self._paused_unauthenticated
                or (not self._pending and self._held is None and self._in_flight is None),
                timeout=timeout,
            ) and not self._paused_unauthenticated

    def _next_batch_locked(self) -> Optional[Batch]:
        """Pick the batch to persist, or None if the worker should keep waiting."""
        if self._paused_unauthenticated:
            return None

        if self._held is not None:
            if self._monotonic() < self._retry_at:
                return None
            batch = self._held
            # Failed batch first, then whatever queued behind it for the same user
            while self._pending and _same_user(self._pending[0], batch):
                batch = batch.merged_with(self._pending.popleft())
            self._held = None
            return batch

        if self._pending:
            return self._pending.popleft()
        return None

    def _worker_loop(self) -> None:
        logger.info("Flush worker started")

        while True:
            with self._cond:
                batch = None
                while not self._worker_exit:
                    batch = self._next_batch_locked()
                    if batch is not None:
                        break
                    wait = None
                    if self._held is not None and not self._paused_unauthenticated:
                        wait = max(0.0, self._retry_at - self._monotonic())
                    self._cond.wait(wait)
                if self._worker_exit:
                    break
                self._in_flight = batch
                self.status.update(pending_batches=len(self._pending))

            self._process(batch)

            with self._cond:
                self._in_flight = None
                self._cond.notify_all()

        logger.info("Flush worker stopped")

    def _process(self, batch: Batch) -> None:
        with self._state_lock:
            if self._state is PipelineState.SAMPLING:
                self._set_state(PipelineState.FLUSHING)

        try:
            self._last_outcome = self.gateway.persist(batch, batch.identity)
        except Unauthenticated as e:
            self._last_outcome = PersistenceOutcome.failed(batch, str(e))
            self._on_unauthenticated(batch, e)
        except TransientStoreError as e:
            self._last_outcome = PersistenceOutcome.failed(batch, str(e))
            self._on_transient(batch, str(e))
        except RejectedByStore as e:
            self._last_outcome = PersistenceOutcome.failed(batch, str(e))
            self._on_rejected(batch, e)
        except Exception as e:
            logger.error("Unexpected error persisting batch %s: %s", batch.batch_id, e, exc_info=True)
            self._last_outcome = PersistenceOutcome.failed(batch, f"Unexpected error: {e}")
            self._on_transient(batch, self._last_outcome.error)
        else:
            self._on_success(batch)
        finally:
            with self._state_lock:
                if self._state is PipelineState.FLUSHING:
                    self._set_state(PipelineState.SAMPLING)

    def _on_success(self, batch: Batch) -> None:
        with self._cond:
            if self._worker_exit:
                return
            self._attempts = 0
            self._failing_since = None
            was_offline, self._offline = self._offline, False

        logger.info("Batch %s delivered (%d samples, reason=%s)", batch.batch_id, len(batch), batch.reason.value)
        self.status.record_saved(len(batch))

        if was_offline:
            with self._state_lock:
                if self._identity is not None and self._state is PipelineState.IDLE:
                    logger.info("Store reachable again - resuming sampling")
                    self._set_state(PipelineState.SAMPLING)
                    self._start_ticking()

    def _on_transient(self, batch: Batch, error: str) -> None:
        now = self._monotonic()
        with self._cond:
            if self._worker_exit:
                self._held = batch
                return
            self._attempts += 1
            attempts = self._attempts
            if self._failing_since is None:
                self._failing_since = now
            outage = now - self._failing_since

            if self.retry_policy.exhausted(attempts):
                self._attempts = 0
                exhausted = True
            else:
                exhausted = False
                delay = self.retry_policy.delay(attempts)
                self._held = batch
                self._retry_at = now + delay
                go_offline = not self._offline and outage >= self.connectivity_grace_period
                if go_offline:
                    self._offline = True

        if exhausted:
            logger.error("Batch %s dropped after %d attempts. Last error: %s", batch.batch_id, attempts, error)
            self.quarantine.put(batch, "retries_exhausted", error)
            self.status.record_failure(error, counter="batches_lost", sync_failed=True)
            return

        logger.warning("Batch %s scheduled for retry %d in %.1fs: %s", batch.batch_id, attempts, delay, error)
        self.status.record_failure(error)

        if go_offline:
            logger.warning("Store unreachable for %.0fs - pausing sampling", outage)
            self.status.update(is_online=False)
            with self._state_lock:
                thread = self._stop_ticking()
                # Buffered samples queue behind the held batch for the next retry
                self._drain_buffer(FlushReason.FORCED, self._identity)
                self._set_state(PipelineState.IDLE)
            if thread and thread is not threading.current_thread():
                thread.join(timeout=self.tick_interval + 1)

    def _on_unauthenticated(self, batch: Batch, error: Unauthenticated) -> None:
        logger.warning("Batch %s refused (%s) - pausing until re-authentication", batch.batch_id, error)
        self.status.record_failure(str(error))

        # Pause and go idle in one step so a concurrent login cannot slip in between
        with self._state_lock:
            with self._cond:
                self._held = batch
                self._paused_unauthenticated = True
                self._attempts = 0
                self._cond.notify_all()
            thread = self._stop_ticking()
            self._set_state(PipelineState.IDLE)
        if thread and thread is not threading.current_thread():
            thread.join(timeout=self.tick_interval + 1)

    def _on_rejected(self, batch: Batch, error: RejectedByStore) -> None:
        with self._cond:
            self._attempts = 0
            self._failing_since = None

        logger.error("Batch %s rejected by store: %s", batch.batch_id, error)
        self.quarantine.put(batch, "rejected", str(error))
        self.status.record_failure(str(error), counter="batches_rejected",
                                   samples=len(batch), sync_failed=True)


def _same_user(a: Batch, b: Batch) -> bool:
    return (a.identity and a.identity.user_id) == (b.identity and b.identity.user_id)


def _anomaly_value(sample: Sample, anomaly: str) -> float:
    field = {"cpu_spike": "cpu_usage", "ram_spike": "memory_usage", "disk_full": "disk_usage"}[anomaly]
    return getattr(sample, field)
