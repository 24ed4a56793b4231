"""
One-shot reading of the current values of discovered sensors.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from .device import DeviceSession
from .frames import Firmware, FrameError
from .sensors import Sensor
from .transport import DeviceError, RadioTransport
from ..outputs.sink import Result, ResultSink
from ..utils.config import ScanSettings
from ..utils.logging import PerformanceMonitor, ProductionLogger


class RealtimeReader:
    """Reads firmware and live measurement of each sensor, one connection at a time."""

    def __init__(self,
                 transport: RadioTransport,
                 settings: ScanSettings,
                 sink: ResultSink,
                 logger: ProductionLogger,
                 performance_monitor: PerformanceMonitor,
                 on_firmware: Optional[Callable[[Sensor, Firmware], None]] = None):
        self.transport = transport
        self.settings = settings
        self.sink = sink
        self.logger = logger
        self.performance_monitor = performance_monitor
        self.on_firmware = on_firmware

    async def _read(self, sensor: Sensor) -> Result:
        async with DeviceSession(self.transport, sensor.address, self.logger) as device:
            firmware = await device.read_firmware()
            measurement = await device.read_measurement()

        return Result(
            name=sensor.name,
            address=sensor.address,
            timestamp=datetime.now(timezone.utc),
            firmware=firmware,
            measurement=measurement,
        )

    async def read_sensor(self, sensor: Sensor) -> Optional[Result]:
        """
        Read one sensor within the session timeout.

        Returns:
            Optional[Result]: The reading, None if the sensor could not be read
        """
        try:
            with self.performance_monitor.measure_time("realtime_read"):
                result = await asyncio.wait_for(self._read(sensor), timeout=self.settings.session_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"Reading {sensor.name} ({sensor.address}) timed out")
            return None
        except (DeviceError, FrameError) as e:
            self.logger.error(f"Reading {sensor.name} ({sensor.address}) failed: {e}")
            return None

        self.logger.debug(f"{sensor.address}: {result.measurement.describe()} battery={result.firmware.battery}%")
        if self.on_firmware:
            self.on_firmware(sensor, result.firmware)
        return result

    async def run(self, sensors: Iterable[Sensor]) -> int:
        """
        Read all sensors and send their results to the sink.

        Returns:
            int: Number of sensors read successfully
        """
        count = 0
        for sensor in sensors:
            result = await self.read_sensor(sensor)
            if result is None:
                continue
            await self.sink.send(result)
            count += 1
        return count
