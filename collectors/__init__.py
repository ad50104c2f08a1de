"""
Data Collectors Package

Samplers turning a metrics source into validated Sample objects.
The local collector reads the host through psutil; the simulated one
produces a seeded, reproducible sequence.
"""

from collectors.base_data_collector import BaseDataCollector, Sample
from collectors.local_collector import LocalDataCollector
from collectors.simulated_collector import SimulatedDataCollector

__all__ = ["BaseDataCollector", "Sample", "LocalDataCollector", "SimulatedDataCollector"]
