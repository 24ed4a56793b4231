"""
Connected conversation with a single Flower Care sensor.
"""

import time
from typing import Optional, Set

from .frames import (
    Firmware, HistoricMeasurement, Measurement,
    decode_device_time, decode_firmware, decode_historic_measurement,
    decode_history_length, decode_measurement
)
from .transport import (
    DEVICE_TIME, FIRMWARE_BATTERY, HISTORY_CONTROL, HISTORY_DATA, LIVE_DATA, MODE_CHANGE,
    Attribute, Connection, ProtocolError, RadioTransport, TransportError
)
from ..utils.logging import ProductionLogger


MODE_REALTIME = bytes([0xA0, 0x1F])
MODE_HISTORY_INIT = bytes([0xA0, 0x00, 0x00])
MODE_BLINK = bytes([0xFD, 0xFF])


def history_address_command(position: int) -> bytes:
    """Command selecting one history entry: ``A1`` followed by the position as uint16 LE."""
    return bytes([0xA1, position & 0xFF, (position >> 8) & 0xFF])


class DeviceSession:
    """
    Short-lived connection to one sensor, used as an async context manager.

    Entering acquires the transport lock, connects and discovers the profile;
    leaving always disconnects and releases the lock.

    Example:
        async with DeviceSession(transport, address, logger) as device:
            firmware = await device.read_firmware()
    """

    def __init__(self, transport: RadioTransport, address: str, logger: ProductionLogger):
        self.transport = transport
        self.address = address
        self.logger = logger
        self.connection: Optional[Connection] = None
        self.profile: Set[str] = set()

    async def __aenter__(self) -> "DeviceSession":
        await self.transport.lock.acquire()
        try:
            self.connection = await self.transport.dial(self.address)
            try:
                self.profile = await self.connection.discover_profile()
                self.logger.debug(f"{self.address} exposes {len(self.profile)} characteristics")
                await self._subscribe_live_data()
            except BaseException:
                await self._close()
                raise
        except BaseException:
            self.transport.lock.release()
            raise
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            await self._close()
        finally:
            self.transport.lock.release()
        return False

    async def _close(self):
        if self.connection is None:
            return
        try:
            await self.connection.close()
            self.logger.debug(f"Disconnected from {self.address}")
        except TransportError as e:
            self.logger.warning(f"Error disconnecting from {self.address}: {e}")
        finally:
            self.connection = None

    async def _subscribe_live_data(self):
        if LIVE_DATA.uuid not in self.profile:
            return

        def on_notification(attribute: Attribute, data: bytes):
            self.logger.debug(f"Notification from {self.address} {attribute.name}: {data.hex()}")

        try:
            await self.connection.subscribe(LIVE_DATA, on_notification)
        except TransportError as e:
            self.logger.debug(f"Subscribing to live data on {self.address} failed: {e}")

    def _require(self, attribute: Attribute) -> Attribute:
        if self.connection is None:
            raise ProtocolError(f"Session with {self.address} is not connected")
        if attribute.uuid not in self.profile:
            raise ProtocolError(
                f"{self.address} does not expose the {attribute.name} characteristic ({attribute.uuid})"
            )
        return attribute

    async def _write(self, attribute: Attribute, data: bytes):
        await self.connection.write_attribute(self._require(attribute), data)

    async def _read(self, attribute: Attribute) -> bytes:
        return await self.connection.read_attribute(self._require(attribute))

    async def read_firmware(self) -> Firmware:
        """Read battery level and firmware version."""
        return decode_firmware(await self._read(FIRMWARE_BATTERY))

    async def read_measurement(self) -> Measurement:
        """Switch to realtime mode and read the live measurement."""
        await self._write(MODE_CHANGE, MODE_REALTIME)
        return decode_measurement(await self._read(LIVE_DATA))

    async def read_history_length(self) -> int:
        """Switch to history mode and read the number of logged entries."""
        await self._write(HISTORY_CONTROL, MODE_HISTORY_INIT)
        return decode_history_length(await self._read(HISTORY_DATA))

    async def read_history_entry(self, position: int) -> HistoricMeasurement:
        """Select and read one logged entry."""
        await self._write(HISTORY_CONTROL, history_address_command(position))
        return decode_historic_measurement(await self._read(HISTORY_DATA))

    async def read_device_time(self) -> int:
        """Read the device clock in seconds."""
        return decode_device_time(await self._read(DEVICE_TIME))

    async def read_time_diff(self) -> float:
        """
        Offset between the local clock and the device clock.

        The device clock is sampled between two local timestamps and compared
        against their midpoint.
        """
        before = time.time()
        device_time = await self.read_device_time()
        after = time.time()
        return (before + after) / 2 - device_time

    async def blink(self):
        """Make the sensor LED blink, useful to locate a device."""
        await self._write(MODE_CHANGE, MODE_BLINK)
