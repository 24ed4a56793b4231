"""
Fake radio transport for testing discovery and device sessions without hardware.
Simulates Flower Care sensors answering mode-change writes and attribute reads.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from flowercare.ble.transport import (
    ATTRIBUTES, DEVICE_TIME, FIRMWARE_BATTERY, HISTORY_CONTROL, HISTORY_DATA, LIVE_DATA,
    MODE_CHANGE, Advertisement, Attribute, TransportError, XIAOMI_SERVICE_UUID
)
from flowercare.outputs.sink import Result, ResultSink

from tests.fixtures.sensor_data import SensorDataFixtures


@dataclass
class MockFlowerCare:
    """Simulated sensor with a live value and a measurement log."""
    address: str
    battery: int = 99
    version: str = "3.2.1"
    device_time: int = 1_000_000
    history: List[int] = field(default_factory=list)  # device timestamps by position
    missing: Set[str] = field(default_factory=set)    # names of attributes not exposed
    fail_connect: int = 0                             # number of dial attempts to reject
    fail_positions: Set[int] = field(default_factory=set)  # history reads that fail once
    fail_close: bool = False
    reported_length: Optional[int] = None

    def profile(self) -> Set[str]:
        return {a.uuid for name, a in ATTRIBUTES.items() if name not in self.missing}


class MockConnection:
    """Connection to a MockFlowerCare, answering reads based on the last mode write."""

    def __init__(self, transport: "MockTransport", device: MockFlowerCare):
        self.transport = transport
        self.device = device
        self.address = device.address
        self.history_command: Optional[bytes] = None
        self.writes: List[tuple] = []
        self.subscriptions: List[Attribute] = []
        self.closed = False

    async def discover_profile(self) -> Set[str]:
        return self.device.profile()

    async def read_attribute(self, attribute: Attribute) -> bytes:
        await asyncio.sleep(0)
        self.transport.reads.append((self.address, attribute.name))
        if attribute == FIRMWARE_BATTERY:
            return SensorDataFixtures.firmware(self.device.battery, self.device.version)
        if attribute == LIVE_DATA:
            return SensorDataFixtures.live_data()
        if attribute == DEVICE_TIME:
            return SensorDataFixtures.device_time(self.device.device_time)
        if attribute == HISTORY_DATA:
            return self._read_history()
        raise TransportError(f"Unexpected read of {attribute.name}")

    def _read_history(self) -> bytes:
        command = self.history_command
        if command is None:
            raise TransportError("History mode not selected")
        if command[0] == 0xA0:
            length = self.device.reported_length
            if length is None:
                length = len(self.device.history)
            return SensorDataFixtures.history_length(length)

        position = command[1] | (command[2] << 8)
        if position in self.device.fail_positions:
            self.device.fail_positions.discard(position)
            raise TransportError(f"Read of history entry {position} failed")
        return SensorDataFixtures.history_entry(self.device.history[position], temperature=position)

    async def write_attribute(self, attribute: Attribute, data: bytes) -> None:
        await asyncio.sleep(0)
        self.writes.append((attribute.name, bytes(data)))
        if attribute == HISTORY_CONTROL:
            self.history_command = bytes(data)
        elif attribute != MODE_CHANGE:
            raise TransportError(f"Unexpected write to {attribute.name}")

    async def subscribe(self, attribute: Attribute, callback) -> None:
        self.subscriptions.append(attribute)

    async def close(self) -> None:
        self.closed = True
        self.transport.open_connections -= 1
        if self.device.fail_close:
            raise TransportError("Disconnect failed")


class MockTransport:
    """
    RadioTransport replacement.

    ``advertisements`` are delivered to the scan callback one by one, then the
    scan idles until cancelled, like a real radio.
    """

    def __init__(self,
                 devices: Optional[Dict[str, MockFlowerCare]] = None,
                 advertisements: Optional[List[Advertisement]] = None,
                 advertisement_interval: float = 0.01,
                 scan_error: Optional[Exception] = None):
        self.devices = devices or {}
        self.advertisements = advertisements or []
        self.advertisement_interval = advertisement_interval
        self.scan_error = scan_error
        self.lock = asyncio.Lock()

        self.scan_started = 0
        self.scan_stopped = 0
        self.dials: List[str] = []
        self.reads: List[tuple] = []
        self.connections: List[MockConnection] = []
        self.open_connections = 0
        self.max_open_connections = 0

    async def scan(self, callback, duplicates_allowed: bool = True) -> None:
        self.scan_started += 1
        try:
            for advertisement in self.advertisements:
                await asyncio.sleep(self.advertisement_interval)
                callback(advertisement)
            if self.scan_error is not None:
                raise self.scan_error
            await asyncio.get_running_loop().create_future()
        finally:
            self.scan_stopped += 1

    async def dial(self, address: str) -> MockConnection:
        await asyncio.sleep(0)
        self.dials.append(address)
        device = self.devices.get(address)
        if device is None:
            raise TransportError(f"Device {address} not reachable")
        if device.fail_connect > 0:
            device.fail_connect -= 1
            raise TransportError(f"Connecting to {address} failed")

        connection = MockConnection(self, device)
        self.connections.append(connection)
        self.open_connections += 1
        self.max_open_connections = max(self.max_open_connections, self.open_connections)
        return connection


def flower_care_advertisement(address: str, service_data: Optional[bytes] = None,
                              name: Optional[str] = "Flower care", rssi: int = -60,
                              connectable: Optional[bool] = True) -> Advertisement:
    """Build an advertisement as a Flower Care sensor would send it."""
    data = {XIAOMI_SERVICE_UUID: service_data} if service_data is not None else {}
    return Advertisement(address=address, name=name, service_data=data, rssi=rssi, connectable=connectable)


class RecordingSink(ResultSink):
    """Sink keeping every written result in memory, optionally failing writes or flushes."""

    def __init__(self, logger, buffer_size: int = 1, fail_after: Optional[int] = None,
                 fail_flush: bool = False):
        super().__init__(logger, buffer_size)
        self.results: List[Result] = []
        self.fail_after = fail_after
        self.fail_flush = fail_flush
        self.flushes = 0

    async def write(self, result: Result):
        if self.fail_after is not None and len(self.results) >= self.fail_after:
            raise IOError("disk full")
        self.results.append(result)

    async def flush(self):
        if self.fail_flush:
            raise IOError("connection lost")
        self.flushes += 1


class DirectSink:
    """Sink with a synchronous hand-off, optionally blocking on a chosen send."""

    def __init__(self, block_on: Optional[int] = None):
        self.results: List[Result] = []
        self.block_on = block_on
        self.blocked = asyncio.Event()
        self.checkpoints = 0

    async def send(self, result: Result):
        if self.block_on is not None and len(self.results) == self.block_on:
            self.blocked.set()
            await asyncio.get_running_loop().create_future()
        self.results.append(result)

    async def checkpoint(self):
        self.checkpoints += 1
