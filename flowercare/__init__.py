"""
Flower Care Sensor Service - discovery and data collection for Xiaomi
Flower Care (MiFlora) plant sensors over Bluetooth Low Energy.

Features:
- Sensor discovery from BLE advertisements
- Realtime readings of battery, firmware and measurements
- Resumable download of the on-device measurement history
- Output as JSON lines or to InfluxDB
- Persistent sensor metadata and history cursors
"""

__version__ = "1.0.0"
__description__ = "Flower Care plant sensor discovery and data collection"

from .utils.config import Config, ScanSettings
from .utils.logging import ProductionLogger, PerformanceMonitor
from .ble.frames import Measurement, Firmware, HistoricMeasurement
from .ble.sensors import Sensor, SensorSet
from .ble.scanner import DiscoverySession
from .ble.device import DeviceSession
from .ble.history import HistorySynchronizer
from .outputs.sink import Result, ResultSink

__all__ = [
    "Config",
    "ScanSettings",
    "ProductionLogger",
    "PerformanceMonitor",
    "Measurement",
    "Firmware",
    "HistoricMeasurement",
    "Sensor",
    "SensorSet",
    "DiscoverySession",
    "DeviceSession",
    "HistorySynchronizer",
    "Result",
    "ResultSink",
]
