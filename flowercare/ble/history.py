"""
Resumable retrieval of the measurement log stored on Flower Care sensors.
"""

import asyncio
from typing import Callable, Iterable, Optional

from .device import DeviceSession
from .frames import FrameError
from .sensors import Sensor
from .transport import DeviceError, RadioTransport
from ..outputs.sink import Result, ResultSink
from ..utils.config import ScanSettings
from ..utils.logging import PerformanceMonitor, ProductionLogger


class HistorySynchronizer:
    """
    Drains the on-device log of each sensor into a result sink.

    Entries are read from the newest position down to position 0. After each
    emitted entry the sensor's ``history_pointer`` is set to that position, so
    an interrupted sync resumes from ``history_pointer - 1``. Before progress is
    reported through ``on_progress`` the sink is checkpointed, so a reported
    cursor never runs ahead of the persisted entries. A pass over one
    sensor stops after ``history_batch_limit`` entries to bound how long a
    connection is held; the driver loops until every sensor reaches 0.
    """

    def __init__(self,
                 transport: RadioTransport,
                 settings: ScanSettings,
                 sink: ResultSink,
                 logger: ProductionLogger,
                 performance_monitor: PerformanceMonitor,
                 on_progress: Optional[Callable[[Sensor], None]] = None):
        self.transport = transport
        self.settings = settings
        self.sink = sink
        self.logger = logger
        self.performance_monitor = performance_monitor
        self.on_progress = on_progress

    async def sync_pass(self, sensor: Sensor) -> int:
        """
        Run one bounded pass over a sensor.

        Connection, protocol and decode errors end the pass for this sensor
        only; they are logged and the entries emitted so far are kept.

        Returns:
            int: Number of entries emitted in this pass

        Raises:
            SinkError: If the sink cannot persist the entries of this pass
        """
        progress = {"entries": 0}
        try:
            await asyncio.wait_for(self._pass(sensor, progress), timeout=self.settings.session_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(
                f"History pass for {sensor.name} ({sensor.address}) timed out after "
                f"{self.settings.session_timeout}s"
            )
        except (DeviceError, FrameError) as e:
            self.logger.error(f"History pass for {sensor.name} ({sensor.address}) failed: {e}")

        entries = progress["entries"]
        self.performance_monitor.log_sync_pass(sensor.address, entries, sensor.history_pointer)
        if entries:
            # Progress is reported only for entries the sink has persisted
            await self.sink.checkpoint()
        if self.on_progress and (entries or sensor.finished):
            self.on_progress(sensor)
        return entries

    async def _pass(self, sensor: Sensor, progress: dict):
        async with DeviceSession(self.transport, sensor.address, self.logger) as device:
            time_diff = await device.read_time_diff()
            length = await device.read_history_length()
            self.logger.info(f"{sensor.name} ({sensor.address}) holds {length} history entries")

            if sensor.history_pointer is not None:
                start = sensor.history_pointer - 1
                if length < sensor.history_pointer:
                    self.logger.warning(
                        f"{sensor.address} reports {length} entries but sync resumes at {start}, "
                        f"the device log may have been reset"
                    )
            else:
                start = length - 1

            if start < 0:
                sensor.history_pointer = 0
                return

            for position in range(start, -1, -1):
                entry = await device.read_history_entry(position)
                result = Result(
                    name=sensor.name,
                    address=sensor.address,
                    timestamp=entry.wall_clock(time_diff),
                    measurement=entry.measurement,
                    position=position,
                )
                await self.sink.send(result)
                sensor.history_pointer = position
                progress["entries"] += 1

                if progress["entries"] > self.settings.history_batch_limit:
                    self.logger.debug(
                        f"Batch limit reached for {sensor.address}, pausing at position {position}"
                    )
                    break

    async def run(self, sensors: Iterable[Sensor]):
        """
        Repeat passes over unfinished sensors until all are finished or a
        full round makes no progress.
        """
        sensors = list(sensors)
        round_number = 0
        while True:
            pending = [s for s in sensors if not s.finished]
            if not pending:
                self.logger.info("History of all sensors synchronized")
                return

            round_number += 1
            self.logger.info(f"History round {round_number}: {len(pending)} sensors pending")
            progressed = False
            for sensor in pending:
                before = sensor.history_pointer
                entries = await self.sync_pass(sensor)
                if entries or sensor.history_pointer != before:
                    progressed = True

            if not progressed:
                unfinished = ', '.join(s.address for s in sensors if not s.finished)
                self.logger.warning(f"No history progress in round {round_number}, giving up on: {unfinished}")
                return
