"""
Radio transport capability used by the discovery and device session code,
and its implementation on top of bleak.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Protocol, Set

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from ..utils.logging import ProductionLogger


class DeviceError(Exception):
    """Base exception for device communication errors."""
    pass


class TransportError(DeviceError):
    """Connect, read, write or scan failure at the radio layer."""
    pass


class ProtocolError(DeviceError):
    """A connected device does not expose an expected attribute."""
    pass


@dataclass(frozen=True)
class Attribute:
    """A characteristic the sensor exposes; ``handle`` is the GATT value handle."""
    name: str
    uuid: str
    handle: int


def _uuid16(short: int) -> str:
    return f"0000{short:04x}-0000-1000-8000-00805f9b34fb"


FIRMWARE_BATTERY = Attribute("firmware_battery", _uuid16(0x1A02), 0x38)
LIVE_DATA = Attribute("live_data", _uuid16(0x1A01), 0x35)
MODE_CHANGE = Attribute("mode_change", _uuid16(0x1A00), 0x33)
DEVICE_TIME = Attribute("device_time", _uuid16(0x1A12), 0x41)
HISTORY_CONTROL = Attribute("history_control", _uuid16(0x1A10), 0x3E)
HISTORY_DATA = Attribute("history_data", _uuid16(0x1A11), 0x3C)

ATTRIBUTES: Dict[str, Attribute] = {
    a.name: a for a in (FIRMWARE_BATTERY, LIVE_DATA, MODE_CHANGE, DEVICE_TIME, HISTORY_CONTROL, HISTORY_DATA)
}

XIAOMI_SERVICE_UUID = _uuid16(0xFE95)


@dataclass
class Advertisement:
    """
    One received broadcast as delivered by the radio.

    ``connectable`` is None when the radio does not report it; bleak does not
    expose connectability on every backend, so BleakTransport leaves it unset.
    """
    address: str
    name: Optional[str] = None
    service_data: Dict[str, bytes] = field(default_factory=dict)
    rssi: Optional[int] = None
    connectable: Optional[bool] = None


AdvertisementCallback = Callable[[Advertisement], None]
NotificationCallback = Callable[[Attribute, bytes], None]


class Connection(Protocol):
    """An open link to one device."""

    address: str

    async def discover_profile(self) -> Set[str]:
        """Return the UUIDs of all characteristics the device exposes."""
        ...

    async def read_attribute(self, attribute: Attribute) -> bytes:
        ...

    async def write_attribute(self, attribute: Attribute, data: bytes) -> None:
        ...

    async def subscribe(self, attribute: Attribute, callback: NotificationCallback) -> None:
        ...

    async def close(self) -> None:
        ...


class RadioTransport(Protocol):
    """
    Minimal radio capability the core depends on.

    ``lock`` serializes device sessions on one adapter, since adapters reliably
    hold only one active connection.
    """

    lock: asyncio.Lock

    async def scan(self, callback: AdvertisementCallback, duplicates_allowed: bool = True) -> None:
        """Deliver advertisements to ``callback`` until the calling task is cancelled."""
        ...

    async def dial(self, address: str) -> Connection:
        ...


class BleakConnection:
    """Connection backed by a connected BleakClient."""

    def __init__(self, client: BleakClient, logger: ProductionLogger):
        self.client = client
        self.address = client.address
        self.logger = logger

    async def discover_profile(self) -> Set[str]:
        try:
            services = self.client.services
            return {
                str(characteristic.uuid).lower()
                for service in services
                for characteristic in service.characteristics
            }
        except BleakError as e:
            raise TransportError(f"Service discovery on {self.address} failed: {e}") from e

    async def read_attribute(self, attribute: Attribute) -> bytes:
        try:
            data = await self.client.read_gatt_char(attribute.uuid)
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Reading {attribute.name} from {self.address} failed: {e}") from e
        return bytes(data)

    async def write_attribute(self, attribute: Attribute, data: bytes) -> None:
        try:
            await self.client.write_gatt_char(attribute.uuid, data, response=True)
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Writing {attribute.name} to {self.address} failed: {e}") from e

    async def subscribe(self, attribute: Attribute, callback: NotificationCallback) -> None:
        def handler(sender, data: bytearray):
            callback(attribute, bytes(data))

        try:
            await self.client.start_notify(attribute.uuid, handler)
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Subscribing to {attribute.name} on {self.address} failed: {e}") from e

    async def close(self) -> None:
        try:
            if self.client.is_connected:
                await self.client.disconnect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Disconnecting from {self.address} failed: {e}") from e


class BleakTransport:
    """
    Radio transport using bleak on a single adapter.

    Features:
    - Continuous scanning with duplicate reporting
    - Connection setup with timeout
    - Per-adapter lock for device sessions
    """

    def __init__(self, logger: ProductionLogger, adapter: str = "auto", connect_timeout: float = 20.0):
        self.logger = logger
        self.adapter = None if adapter in (None, "", "auto", "default") else adapter
        self.connect_timeout = connect_timeout
        self.lock = asyncio.Lock()

        self.logger.info(f"BleakTransport initialized with adapter: {adapter}")

    def _scanner_kwargs(self, duplicates_allowed: bool) -> dict:
        kwargs = {"bluez": {"filters": {"DuplicateData": duplicates_allowed}}}
        if self.adapter:
            kwargs["adapter"] = self.adapter
        return kwargs

    async def scan(self, callback: AdvertisementCallback, duplicates_allowed: bool = True) -> None:
        """
        Deliver advertisements until cancelled.

        Advertisements leave ``connectable`` unset since bleak does not report it
        on every backend; the classifier treats that as connectable.
        """
        def detection_callback(device: BLEDevice, advertisement_data: AdvertisementData):
            callback(Advertisement(
                address=device.address.upper(),
                name=advertisement_data.local_name or device.name,
                service_data={k.lower(): bytes(v) for k, v in advertisement_data.service_data.items()},
                rssi=advertisement_data.rssi,
            ))

        try:
            scanner = BleakScanner(
                detection_callback=detection_callback,
                **self._scanner_kwargs(duplicates_allowed)
            )
            await scanner.start()
        except (BleakError, OSError) as e:
            raise TransportError(f"Failed to start BLE scan: {e}") from e

        self.logger.debug("BLE scanner started")
        try:
            # Runs until the surrounding task is cancelled
            await asyncio.get_running_loop().create_future()
        finally:
            try:
                await scanner.stop()
                self.logger.debug("BLE scanner stopped")
            except (BleakError, OSError) as e:
                self.logger.warning(f"Error stopping scanner: {e}")

    async def dial(self, address: str) -> BleakConnection:
        kwargs = {"adapter": self.adapter} if self.adapter else {}
        client = BleakClient(address, **kwargs)
        try:
            await client.connect(timeout=self.connect_timeout)
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Connecting to {address} failed: {e}") from e

        self.logger.debug(f"Connected to {address}")
        return BleakConnection(client, self.logger)
