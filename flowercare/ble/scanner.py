"""
Discovery of Flower Care sensors.
Runs one bounded scan and collects distinct sensors into an address-ordered set.
"""

import asyncio
import time
from typing import Callable, Optional

from .advertisements import AdvertisementClassifier
from .sensors import Sensor, SensorSet
from .transport import Advertisement, RadioTransport, TransportError
from ..utils.config import ScanSettings
from ..utils.logging import PerformanceMonitor, ProductionLogger


class DiscoverySession:
    """
    One bounded scan for Flower Care sensors.

    The radio callback only classifies broadcasts and hands them to a queue.
    A single consumer task owns the SensorSet, inserts into it and stops the
    scan once the target sensor count is reached.
    """

    def __init__(self,
                 transport: RadioTransport,
                 settings: ScanSettings,
                 logger: ProductionLogger,
                 performance_monitor: PerformanceMonitor,
                 on_discovered: Optional[Callable[[Sensor], None]] = None):
        self.transport = transport
        self.settings = settings
        self.logger = logger
        self.performance_monitor = performance_monitor
        self.on_discovered = on_discovered

        self.classifier = AdvertisementClassifier(settings, logger, performance_monitor)
        self.sensors = SensorSet()
        self._queue: "asyncio.Queue[Optional[Sensor]]" = asyncio.Queue()
        self._target_reached = asyncio.Event()
        self.advertisements_seen = 0

    def _handle_advertisement(self, advertisement: Advertisement):
        """Radio callback, must not block."""
        self.advertisements_seen += 1
        sensor = self.classifier.classify(advertisement)
        if sensor is not None:
            self._queue.put_nowait(sensor)

    def _store(self, sensor: Sensor):
        stored, existed = self.sensors.insert(sensor)
        if sensor.rssi is not None:
            self.performance_monitor.record_metric(f"rssi_{stored.address}", sensor.rssi)

        if not existed:
            self.logger.info(f"Discovered sensor {stored.name} ({stored.address}) RSSI: {stored.rssi}")
            if self.on_discovered:
                try:
                    self.on_discovered(stored)
                except Exception as e:
                    # The scan keeps collecting sensors
                    self.logger.error(f"Discovery callback failed for {stored.address}: {e}")

        target = self.settings.target_count
        if target > 0 and len(self.sensors) >= target and not self._target_reached.is_set():
            self.logger.info(f"Found {len(self.sensors)} of {target} expected sensors, stopping scan")
            self._target_reached.set()

    async def _consume(self):
        while True:
            sensor = await self._queue.get()
            if sensor is None:
                return
            self._store(sensor)

    async def run(self) -> SensorSet:
        """
        Scan until the deadline passes or the target count is reached.

        Returns:
            SensorSet: Discovered sensors in address order

        Raises:
            TransportError: If the radio fails for a reason other than the deadline
        """
        start_time = time.time()
        timeout = self.settings.scan_timeout
        self.logger.info(
            f"Starting BLE scan for {timeout}s (target: {self.settings.target_count or 'none'})"
        )

        consumer = asyncio.create_task(self._consume())
        scan_task = asyncio.create_task(
            self.transport.scan(self._handle_advertisement, duplicates_allowed=True)
        )
        target_task = asyncio.create_task(self._target_reached.wait())

        success = False
        try:
            done, _ = await asyncio.wait(
                {scan_task, target_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED
            )
            if scan_task in done:
                # scan() only returns by raising, a clean return is treated as end of scan
                error = scan_task.exception()
                if error is not None:
                    if isinstance(error, TransportError):
                        raise error
                    raise TransportError(f"BLE scan failed: {error}") from error
            success = True
        finally:
            for task in (scan_task, target_task):
                task.cancel()
            await asyncio.gather(scan_task, target_task, return_exceptions=True)

            # Sensors classified before the scan stopped still count
            self._queue.put_nowait(None)
            await asyncio.gather(consumer, return_exceptions=True)

            duration = time.time() - start_time
            self.performance_monitor.log_ble_scan(duration, len(self.sensors), success)

        self.logger.info(
            f"Scan finished: {len(self.sensors)} sensors from {self.advertisements_seen} advertisements"
        )
        return self.sensors


async def discover(transport: RadioTransport,
                   settings: ScanSettings,
                   logger: ProductionLogger,
                   performance_monitor: PerformanceMonitor,
                   on_discovered: Optional[Callable[[Sensor], None]] = None) -> SensorSet:
    """Run a single discovery session and return the sensors found."""
    session = DiscoverySession(transport, settings, logger, performance_monitor, on_discovered)
    return await session.run()
