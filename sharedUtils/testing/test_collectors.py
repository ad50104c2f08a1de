"""Tests for the samplers, sanitization, energy figures and anomaly rules."""

import math
from types import SimpleNamespace

import psutil
import pynvml
import pytest
from pydantic import ValidationError

from collectors.base_data_collector import BaseDataCollector, RateTracker, Sample
from collectors.energy import (
    calculate_water_bottles,
    detect_anomaly,
    estimate_watts,
    sanitize_reading,
)
from collectors.local_collector import LocalDataCollector
from collectors.simulated_collector import SimulatedDataCollector
from pipeline.errors import MetricsUnavailable


class BrokenCollector(BaseDataCollector):
    SOURCE = "broken"

    def read_metrics(self):
        raise OSError("sensor bus gone")


# =============================================================================
# SANITIZATION AND ENERGY
# =============================================================================

def test_sanitize_clamps_out_of_range_values():
    clean = sanitize_reading({
        "cpu_usage": 150.0,
        "memory_usage": -3.0,
        "gpu_usage": math.nan,
        "disk_usage": 55.5,
        "network_download": 5000.0,
        "disk_read_speed": -1.0,
    })

    assert clean["cpu_usage"] == 100.0
    assert clean["memory_usage"] == 0.0
    assert clean["gpu_usage"] == 0.0
    assert clean["disk_usage"] == 55.5
    assert clean["network_download"] == 1000.0
    assert clean["disk_read_speed"] == 0.0
    assert clean["network_upload"] == 0.0


def test_sanitize_keeps_extra_fields():
    assert sanitize_reading({"cpu_temperature": 48.0})["cpu_temperature"] == 48.0


def test_watts_sum_per_component():
    reading = {"cpu_usage": 100.0, "memory_usage": 100.0, "gpu_usage": 100.0, "disk_usage": 100.0}

    assert estimate_watts(reading) == pytest.approx(95 + 15 + 150 + 10)


def test_water_bottles_for_one_hour_of_full_cpu():
    # 95 W for an hour is 0.095 kWh; 0.25 L per kWh; 0.5 L per bottle
    bottles = calculate_water_bottles({"cpu_usage": 100.0}, interval_seconds=3600)

    assert bottles == pytest.approx(0.0475)


@pytest.mark.parametrize("reading, expected", [
    ({"cpu_usage": 80.0, "memory_usage": 85.0, "disk_usage": 95.0}, None),
    ({"cpu_usage": 80.1}, "cpu_spike"),
    ({"memory_usage": 86.0}, "ram_spike"),
    ({"disk_usage": 96.0}, "disk_full"),
    ({"cpu_usage": 99.0, "memory_usage": 99.0, "disk_usage": 99.0}, "cpu_spike"),
])
def test_detect_anomaly(reading, expected):
    assert detect_anomaly(reading) == expected


def test_detect_anomaly_accepts_sample(make_sample):
    assert detect_anomaly(make_sample(memory_usage=90.0)) == "ram_spike"


# =============================================================================
# SAMPLE MODEL
# =============================================================================

def test_sample_rejects_out_of_range_percentage(make_sample):
    with pytest.raises(ValidationError):
        make_sample(cpu_usage=101.0)


def test_sample_rejects_negative_rate(make_sample):
    with pytest.raises(ValidationError):
        make_sample(network_upload=-0.1)


def test_sample_requires_device_id(make_sample):
    with pytest.raises(ValidationError):
        make_sample(device_id="")


def test_sample_is_frozen(make_sample):
    sample = make_sample()
    with pytest.raises(ValidationError):
        sample.cpu_usage = 50.0


# =============================================================================
# COLLECTORS
# =============================================================================

def test_simulated_collector_is_reproducible():
    first = SimulatedDataCollector(device_id="sim", seed=7)
    second = SimulatedDataCollector(device_id="sim", seed=7)

    for _ in range(20):
        a = first.sample_once().model_dump(exclude={"timestamp"})
        b = second.sample_once().model_dump(exclude={"timestamp"})
        assert a == b


def test_simulated_collector_values_in_range():
    collector = SimulatedDataCollector(device_id="sim", seed=1)

    for _ in range(200):
        sample = collector.sample_once()
        assert isinstance(sample, Sample)
        assert 0 <= sample.cpu_usage <= 100
        assert sample.water_bottles_equivalent >= 0


def test_simulated_unavailable_read_raises():
    collector = SimulatedDataCollector(device_id="sim", unavailable_reads=[2])

    collector.sample_once()
    with pytest.raises(MetricsUnavailable):
        collector.sample_once()
    collector.sample_once()
    assert collector.reads == 3


def test_sample_once_wraps_os_errors():
    with pytest.raises(MetricsUnavailable, match="broken source unavailable"):
        BrokenCollector(device_id="x").sample_once()


def test_sample_once_rounds_to_precision():
    collector = SimulatedDataCollector(device_id="sim", seed=5, precision=1)
    sample = collector.sample_once()

    assert sample.cpu_usage == round(sample.cpu_usage, 1)


def test_rate_tracker_reports_mb_per_second(fake_clock):
    tracker = RateTracker(monotonic=fake_clock)
    mb = RateTracker.BYTES_PER_MB

    assert tracker.update({"network_download": 10 * mb}) == {"network_download": 0.0}
    fake_clock.advance(2)
    assert tracker.update({"network_download": 12 * mb}) == {"network_download": 1.0}
    fake_clock.advance(1)
    # Counter reset
    assert tracker.update({"network_download": 0}) == {"network_download": 0.0}


@pytest.fixture
def fake_psutil(monkeypatch):
    def no_driver():
        raise pynvml.NVMLError(pynvml.NVML_ERROR_LIBRARY_NOT_FOUND)

    monkeypatch.setattr(pynvml, "nvmlInit", no_driver)
    monkeypatch.setattr(psutil, "cpu_percent", lambda interval=None: 30.0)
    monkeypatch.setattr(psutil, "virtual_memory", lambda: SimpleNamespace(percent=50.0))
    monkeypatch.setattr(psutil, "disk_usage", lambda path: SimpleNamespace(percent=70.0))
    monkeypatch.setattr(psutil, "disk_io_counters", lambda: SimpleNamespace(read_bytes=0, write_bytes=0))
    monkeypatch.setattr(psutil, "net_io_counters", lambda: SimpleNamespace(bytes_recv=0, bytes_sent=0))
    monkeypatch.setattr(psutil, "sensors_temperatures", lambda: {}, raising=False)
    return monkeypatch


def test_local_collector_reads_psutil(fake_psutil):
    sample = LocalDataCollector(device_id="host-1").sample_once()

    assert sample.device_id == "host-1"
    assert sample.cpu_usage == 30.0
    assert sample.memory_usage == 50.0
    assert sample.disk_usage == 70.0
    assert sample.gpu_usage == 0.0
    assert sample.network_download == 0.0
    assert sample.cpu_temperature is None


def test_local_collector_reads_temperature(fake_psutil):
    sensor = SimpleNamespace(current=52.25)
    fake_psutil.setattr(psutil, "sensors_temperatures", lambda: {"coretemp": [sensor]}, raising=False)

    sample = LocalDataCollector(device_id="host-1").sample_once()

    assert sample.cpu_temperature == 52.25


def test_local_collector_psutil_error_is_unavailable(fake_psutil):
    def denied():
        raise psutil.AccessDenied()

    fake_psutil.setattr(psutil, "virtual_memory", denied)

    with pytest.raises(MetricsUnavailable):
        LocalDataCollector(device_id="host-1").sample_once()


def test_gpu_usage_from_nvml(fake_psutil):
    fake_psutil.setattr(pynvml, "nvmlInit", lambda: None)
    fake_psutil.setattr(pynvml, "nvmlDeviceGetHandleByIndex", lambda index: "gpu-0")
    fake_psutil.setattr(pynvml, "nvmlDeviceGetUtilizationRates",
                        lambda handle: SimpleNamespace(gpu=42, memory=10))

    collector = LocalDataCollector(device_id="host-1")

    assert collector._get_gpu_usage() == 42.0


def test_gpu_usage_zero_on_nvml_error(fake_psutil):
    fake_psutil.setattr(pynvml, "nvmlInit", lambda: None)
    fake_psutil.setattr(pynvml, "nvmlDeviceGetHandleByIndex", lambda index: "gpu-0")

    def lost(handle):
        raise pynvml.NVMLError(pynvml.NVML_ERROR_GPU_IS_LOST)

    fake_psutil.setattr(pynvml, "nvmlDeviceGetUtilizationRates", lost)

    assert LocalDataCollector(device_id="host-1")._get_gpu_usage() == 0.0
