"""Deterministic sampler used by tests and --simulate runs."""

import random
from typing import Dict, Iterable, Optional
from collectors.base_data_collector import BaseDataCollector
from pipeline.errors import MetricsUnavailable
from sharedUtils.logger.logger import get_logger

logger = get_logger(__name__)


class SimulatedDataCollector(BaseDataCollector):
    """
    Seeded random walk over plausible desktop load.

    The same seed always yields the same sequence of readings. Reads whose
    1-based index is listed in ``unavailable_reads`` raise
    MetricsUnavailable, which lets tests exercise skipped ticks.
    """

    SOURCE = "simulated"

    def __init__(self, device_id: str, seed: Optional[int] = 0,
                 unavailable_reads: Iterable[int] = (), **kwargs):
        super().__init__(device_id=device_id, **kwargs)
        self._random = random.Random(seed)
        self._unavailable = set(unavailable_reads)
        self.reads = 0
        self._cpu = 20.0
        self._memory = 45.0

    def _walk(self, value: float, step: float) -> float:
        return min(100.0, max(0.0, value + self._random.uniform(-step, step)))

    def read_metrics(self) -> Dict[str, float]:
        self.reads += 1
        if self.reads in self._unavailable:
            raise MetricsUnavailable(f"simulated sensor offline on read {self.reads}")

        self._cpu = self._walk(self._cpu, 5.0)
        self._memory = self._walk(self._memory, 1.0)

        return {
            "cpu_usage": self._cpu,
            "memory_usage": self._memory,
            "gpu_usage": self._random.uniform(0.0, 30.0),
            "disk_usage": 60.0,
            "disk_read_speed": self._random.uniform(0.0, 50.0),
            "disk_write_speed": self._random.uniform(0.0, 20.0),
            "network_download": self._random.uniform(0.0, 5.0),
            "network_upload": self._random.uniform(0.0, 1.0),
            "cpu_temperature": round(35.0 + self._cpu / 4, 1),
        }
