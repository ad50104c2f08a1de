"""Local system metrics sampler (CPU, RAM, GPU, disk, network, temperature)."""

from collectors.base_data_collector import BaseDataCollector, RateTracker
from pipeline.errors import MetricsUnavailable
from typing import Dict, Optional
import psutil
import pynvml
from sharedUtils.logger.logger import get_logger


# Constants
logger = get_logger(__name__)
SENSOR_NAMES = ['coretemp', 'k10temp', 'zenpower', 'cpu_thermal']  # CPU temperature sensor names (Intel, AMD, ARM)


def _open_first_gpu():
    """NVML handle for GPU 0, or None when no NVIDIA driver is present."""
    try:
        pynvml.nvmlInit()
        return pynvml.nvmlDeviceGetHandleByIndex(0)
    except pynvml.NVMLError as e:
        logger.debug("NVML unavailable, GPU usage reported as 0: %s", e)
        return None


class LocalDataCollector(BaseDataCollector):
    """Sampler reading the machine it runs on through psutil."""

    SOURCE = "local"

    def __init__(self, device_id: str, disk_path: str = "/", **kwargs):
        super().__init__(device_id=device_id, **kwargs)
        self.disk_path = disk_path
        self._rates = RateTracker()
        self._gpu_handle = _open_first_gpu()

        # Prime cpu_percent so the first non-blocking call is meaningful
        psutil.cpu_percent(interval=None)

    def _get_cpu_temperature(self) -> Optional[float]:
        """Get CPU temperature in Celsius, or None if unavailable."""
        if not hasattr(psutil, "sensors_temperatures"):
            return None

        temps = psutil.sensors_temperatures()
        if not temps:
            return None
        for sensor_name in SENSOR_NAMES:
            if sensor_name in temps and temps[sensor_name]:
                return round(temps[sensor_name][0].current, self.precision)
        first_sensor = next(iter(temps.values()))
        if first_sensor:
            return round(first_sensor[0].current, self.precision)
        return None

    def _get_gpu_usage(self) -> float:
        """GPU utilisation of the first NVIDIA device, 0 when none is visible."""
        if self._gpu_handle is None:
            return 0.0

        try:
            return float(pynvml.nvmlDeviceGetUtilizationRates(self._gpu_handle).gpu)
        except pynvml.NVMLError as e:
            logger.debug("NVML utilisation query failed: %s", e)
            return 0.0

    def read_metrics(self) -> Dict[str, float]:
        """Collect one raw reading. psutil failures surface as MetricsUnavailable."""
        try:
            memory = psutil.virtual_memory()
            cpu_percent = psutil.cpu_percent(interval=None)
            disk = psutil.disk_usage(self.disk_path)
            disk_io = psutil.disk_io_counters()
            net_io = psutil.net_io_counters()
            cpu_temp = self._get_cpu_temperature()
        except psutil.Error as e:
            raise MetricsUnavailable(f"psutil could not read metrics: {e}") from e
        except OSError as e:
            raise MetricsUnavailable(f"System metrics unreadable: {e}") from e

        counters = {
            "disk_read_speed": disk_io.read_bytes if disk_io else 0,
            "disk_write_speed": disk_io.write_bytes if disk_io else 0,
            "network_download": net_io.bytes_recv if net_io else 0,
            "network_upload": net_io.bytes_sent if net_io else 0,
        }
        rates = self._rates.update(counters)

        reading = {
            "cpu_usage": cpu_percent,
            "memory_usage": memory.percent,
            "gpu_usage": self._get_gpu_usage(),
            "disk_usage": disk.percent,
            **rates,
        }
        if cpu_temp is not None:
            reading["cpu_temperature"] = cpu_temp

        return reading


if __name__ == "__main__":
    collector = LocalDataCollector(device_id="local-system-001")
    sample = collector.sample_once()

    print(f"Local Collector - {collector.device_id}")
    for name, value in sample.model_dump().items():
        print(f"  {name}: {value}")
