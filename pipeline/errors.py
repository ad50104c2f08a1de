"""Error taxonomy of the telemetry pipeline."""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from pipeline.batch_buffer import Batch


class TelemetryError(Exception):
    """Base class for every pipeline error."""


class MetricsUnavailable(TelemetryError):
    """The metrics source could not be read; the tick is skipped."""


class BufferOverflow(UserWarning):
    """
    Non-fatal warning emitted when the buffer ceiling forces an eviction.

    Raised through the warnings module, never as an exception, so a full
    buffer loses its oldest sample instead of crashing the producer.
    """


class PersistenceError(TelemetryError):
    """
    A batch could not be persisted.

    The batch travels back to the caller untouched on ``self.batch`` so the
    caller decides between retry, requeue and quarantine.
    """

    def __init__(self, message: str, batch: Optional['Batch'] = None):
        super().__init__(message)
        self.batch = batch


class Unauthenticated(PersistenceError):
    """No identity is available, or the store refused the credentials."""


class TransientStoreError(PersistenceError):
    """Network or server-side failure; retrying later may succeed."""


class RejectedByStore(PersistenceError):
    """Permanent validation failure from the store; retrying is pointless."""

    def __init__(self, message: str, batch: Optional['Batch'] = None, status_code: Optional[int] = None):
        super().__init__(message, batch)
        self.status_code = status_code
