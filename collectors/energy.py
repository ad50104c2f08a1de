"""
Energy conversions and anomaly rules for raw system readings.

Power is estimated per component from its utilisation. Values are
rough desktop figures, not measurements:

    CPU 95 W, RAM 15 W, GPU 150 W, disk 10 W at 100 % load

One kWh of electricity is counted as 0.25 L of water used in
production, and a bottle holds 0.5 L.
"""

from typing import Mapping, Optional

CPU_MAX_WATTS = 95.0
RAM_MAX_WATTS = 15.0
GPU_MAX_WATTS = 150.0
DISK_MAX_WATTS = 10.0

LITERS_PER_KWH = 0.25
LITERS_PER_BOTTLE = 0.5

CPU_SPIKE_PERCENT = 80.0
RAM_SPIKE_PERCENT = 85.0
DISK_FULL_PERCENT = 95.0

PERCENT_FIELDS = ("cpu_usage", "memory_usage", "gpu_usage", "disk_usage")
RATE_FIELDS = ("disk_read_speed", "disk_write_speed", "network_download", "network_upload")


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def sanitize_reading(reading: Mapping[str, float], max_rate: float = 1000.0) -> dict:
    """
    Force a raw reading into the valid range.

    Percentages are clamped to [0, 100] and rates to [0, max_rate].
    NaN values become 0. Fields outside the metric set are passed through.
    """
    clean = dict(reading)
    for field in PERCENT_FIELDS:
        clean[field] = clamp(_finite(reading.get(field, 0.0)), 0.0, 100.0)
    for field in RATE_FIELDS:
        clean[field] = clamp(_finite(reading.get(field, 0.0)), 0.0, max_rate)
    return clean


def _finite(value: Optional[float]) -> float:
    if value is None or value != value:  # NaN
        return 0.0
    return float(value)


def estimate_watts(reading: Mapping[str, float]) -> float:
    return (
        reading.get("cpu_usage", 0.0) / 100 * CPU_MAX_WATTS
        + reading.get("memory_usage", 0.0) / 100 * RAM_MAX_WATTS
        + reading.get("gpu_usage", 0.0) / 100 * GPU_MAX_WATTS
        + reading.get("disk_usage", 0.0) / 100 * DISK_MAX_WATTS
    )


def watts_to_kwh(watts: float, duration_seconds: float) -> float:
    return (watts * duration_seconds) / (1000.0 * 3600.0)


def calculate_water_bottles(reading: Mapping[str, float], interval_seconds: float = 1.0) -> float:
    """Bottles of water equivalent to the energy used over one interval."""
    kwh = watts_to_kwh(estimate_watts(reading), interval_seconds)
    return kwh * LITERS_PER_KWH / LITERS_PER_BOTTLE


def detect_anomaly(reading) -> Optional[str]:
    """
    Return the anomaly type of a reading, or None.

    Accepts a mapping or any object with the metric attributes (a Sample).
    The first matching rule wins: cpu_spike, ram_spike, disk_full.
    """
    get = reading.get if isinstance(reading, Mapping) else lambda k, d=0.0: getattr(reading, k, d)

    if get("cpu_usage", 0.0) > CPU_SPIKE_PERCENT:
        return "cpu_spike"
    if get("memory_usage", 0.0) > RAM_SPIKE_PERCENT:
        return "ram_spike"
    if get("disk_usage", 0.0) > DISK_FULL_PERCENT:
        return "disk_full"
    return None
