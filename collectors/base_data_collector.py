"""Base class for metric samplers and the Sample data model."""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, Optional
import time
from pydantic import BaseModel, ConfigDict, Field
from collectors.energy import calculate_water_bottles, sanitize_reading
from pipeline.errors import MetricsUnavailable
from sharedUtils.logger.logger import get_logger

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Sample(BaseModel):
    """
    One instantaneous reading of a device.

    Percentages are bounded to [0, 100]; rates and the derived water
    metric must be non-negative. Samples are frozen once built, so the
    buffer can hand the same object to several batches without copies.

    Attributes:
        device_id: Device the reading was taken on
        timestamp: Capture instant (UTC)
        cpu_usage, memory_usage, gpu_usage, disk_usage: Utilisation in %
        disk_read_speed, disk_write_speed: Disk throughput in MB/s
        network_download, network_upload: Network throughput in MB/s
        water_bottles_equivalent: Bottles of water for the energy of one tick
        cpu_temperature: CPU package temperature in Celsius, when exposed
    """
    model_config = ConfigDict(frozen=True)

    device_id: str = Field(min_length=1)
    timestamp: datetime = Field(default_factory=utc_now)
    cpu_usage: float = Field(ge=0, le=100)
    memory_usage: float = Field(ge=0, le=100)
    gpu_usage: float = Field(ge=0, le=100)
    disk_usage: float = Field(ge=0, le=100)
    disk_read_speed: float = Field(ge=0)
    disk_write_speed: float = Field(ge=0)
    network_download: float = Field(ge=0)
    network_upload: float = Field(ge=0)
    water_bottles_equivalent: float = Field(ge=0)
    cpu_temperature: Optional[float] = None


class BaseDataCollector(ABC):
    """
    Abstract base class for samplers.

    Subclasses only implement read_metrics(). Cadence belongs to the
    scheduler: a collector never schedules itself, so sample_once() is a
    plain synchronous call that can be driven from tests.

    Attributes:
        source (str): The data source identifier (e.g. 'local', 'simulated')
        device_id (str): Identifier stamped on every sample
        interval_seconds (float): Expected tick length, used for energy figures
    """

    SOURCE = "base"

    def __init__(self, device_id: str, interval_seconds: float = 1.0, precision: int = 2,
                 max_rate: float = 1000.0, clock: Callable[[], datetime] = utc_now):
        self.source = self.SOURCE
        self.device_id = device_id
        self.interval_seconds = interval_seconds
        self.precision = precision
        self.max_rate = max_rate
        self._clock = clock

        logger.debug("Collector init with source=%s, device_id=%s, interval=%.2fs",
                     self.source, device_id, interval_seconds)

    @abstractmethod
    def read_metrics(self) -> Dict[str, float]:
        """
        Read raw metrics from the underlying source.

        Returns:
            Mapping with the Sample metric names (cpu_usage, memory_usage, ...)

        Raises:
            MetricsUnavailable: If the source cannot be read
        """

    def sample_once(self) -> Sample:
        """
        Produce one validated Sample, or raise MetricsUnavailable.

        Raw values are sanitized before the Sample is built, so a reading
        either yields a complete in-range sample or nothing.
        """
        try:
            raw = self.read_metrics()
        except MetricsUnavailable:
            raise
        except (OSError, RuntimeError) as e:
            raise MetricsUnavailable(f"{self.source} source unavailable: {e}") from e

        clean = sanitize_reading(raw, self.max_rate)
        bottles = calculate_water_bottles(clean, self.interval_seconds)

        return Sample(
            device_id=self.device_id,
            timestamp=self._clock(),
            cpu_usage=round(clean["cpu_usage"], self.precision),
            memory_usage=round(clean["memory_usage"], self.precision),
            gpu_usage=round(clean["gpu_usage"], self.precision),
            disk_usage=round(clean["disk_usage"], self.precision),
            disk_read_speed=round(clean["disk_read_speed"], self.precision),
            disk_write_speed=round(clean["disk_write_speed"], self.precision),
            network_download=round(clean["network_download"], self.precision),
            network_upload=round(clean["network_upload"], self.precision),
            water_bottles_equivalent=bottles,
            cpu_temperature=clean.get("cpu_temperature"),
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(source='{self.source}', device_id={self.device_id})"


class RateTracker:
    """Turns monotonically increasing byte counters into MB/s rates."""

    BYTES_PER_MB = 1024 * 1024

    def __init__(self, monotonic: Callable[[], float] = time.monotonic):
        self._monotonic = monotonic
        self._previous: Dict[str, float] = {}
        self._previous_at: Optional[float] = None

    def update(self, counters: Dict[str, float]) -> Dict[str, float]:
        """Return MB/s per counter since the last call; zeros on the first call."""
        now = self._monotonic()
        rates = {name: 0.0 for name in counters}

        if self._previous_at is not None:
            elapsed = now - self._previous_at
            if elapsed > 0:
                for name, value in counters.items():
                    delta = value - self._previous.get(name, value)
                    # Counters reset on wrap or NIC reconnect
                    rates[name] = max(delta, 0) / self.BYTES_PER_MB / elapsed

        self._previous = dict(counters)
        self._previous_at = now
        return rates
