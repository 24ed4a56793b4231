"""
Decoder for the Xiaomi service data frame broadcast by Flower Care sensors,
and the classifier that decides which broadcasts belong to a sensor.
"""

import struct
from dataclasses import dataclass
from typing import Optional

from .frames import (
    Conductivity, DecodeError, FrameError, Measurement, RawFrame, Temperature, TruncatedDataError
)
from .sensors import Sensor
from .transport import XIAOMI_SERVICE_UUID, Advertisement
from ..utils.config import ScanSettings


DEVICE_NAME = "Flower care"
DEVICE_OUI = "C4:7C:8D"

MIN_FRAME_SIZE = 5

# Frame control flags (lower 12 bits of the control word)
FLAG_NEW_FACTORY = 1 << 0
FLAG_CONNECTED = 1 << 1
FLAG_CENTRAL = 1 << 2
FLAG_ENCRYPTED = 1 << 3
FLAG_MAC_ADDRESS = 1 << 4
FLAG_CAPABILITIES = 1 << 5
FLAG_MEASUREMENT = 1 << 6
FLAG_CUSTOM_DATA = 1 << 7
FLAG_SUBTITLE = 1 << 8
FLAG_BINDING = 1 << 9

# Measurement kind ids
MEASUREMENT_TEMPERATURE = 0x1004
MEASUREMENT_BRIGHTNESS = 0x1007
MEASUREMENT_MOISTURE = 0x1008
MEASUREMENT_CONDUCTIVITY = 0x1009


@dataclass
class AdvertisementFrame:
    """
    Parsed Xiaomi service data frame.

    Optional parts are present exactly when their flag bit is set. ``mac`` is
    kept in display order; on the wire it is reversed. Bytes following the
    parsed parts are kept in ``trailer`` so that ``to_bytes`` reproduces the
    input exactly.
    """
    flags: int
    version: int
    product_id: int
    frame_counter: int
    mac: Optional[bytes] = None
    capabilities: Optional[int] = None
    measurement_id: Optional[int] = None
    measurement_data: Optional[bytes] = None
    trailer: bytes = b""

    @classmethod
    def decode(cls, data: bytes) -> "AdvertisementFrame":
        """
        Decode a service data payload.

        Raises:
            TruncatedDataError: If the payload is shorter than its flags require
        """
        if len(data) < MIN_FRAME_SIZE:
            raise TruncatedDataError(
                f"advertisement frame must be at least {MIN_FRAME_SIZE} bytes long, got {len(data)}"
            )

        frame = RawFrame(data)
        control = frame.read_uint16("frame control")
        flags = control & 0x0FFF
        result = cls(
            flags=flags,
            version=control >> 12,
            product_id=frame.read_uint16("product id"),
            frame_counter=frame.read_uint8("frame counter"),
        )

        if flags & FLAG_MAC_ADDRESS:
            result.mac = frame.read_bytes(6, "mac address")[::-1]
        if flags & FLAG_CAPABILITIES:
            result.capabilities = frame.read_uint8("capabilities")
        if flags & FLAG_MEASUREMENT:
            result.measurement_id = frame.read_uint16("measurement id")
            length = frame.read_uint8("measurement length")
            result.measurement_data = frame.read_bytes(length, "measurement")

        result.trailer = frame.read_rest()
        return result

    def to_bytes(self) -> bytes:
        """Encode the frame back into its wire form."""
        out = bytearray(struct.pack('<HHB', (self.version << 12) | (self.flags & 0x0FFF),
                                    self.product_id, self.frame_counter))
        if self.has_mac_address:
            out += bytes(self.mac)[::-1]
        if self.has_capabilities:
            out.append(self.capabilities)
        if self.has_measurement:
            out += struct.pack('<HB', self.measurement_id, len(self.measurement_data))
            out += self.measurement_data
        out += self.trailer
        return bytes(out)

    @property
    def is_new_factory(self) -> bool:
        return bool(self.flags & FLAG_NEW_FACTORY)

    @property
    def is_connected(self) -> bool:
        return bool(self.flags & FLAG_CONNECTED)

    @property
    def is_central(self) -> bool:
        return bool(self.flags & FLAG_CENTRAL)

    @property
    def is_encrypted(self) -> bool:
        return bool(self.flags & FLAG_ENCRYPTED)

    @property
    def has_mac_address(self) -> bool:
        return bool(self.flags & FLAG_MAC_ADDRESS)

    @property
    def has_capabilities(self) -> bool:
        return bool(self.flags & FLAG_CAPABILITIES)

    @property
    def has_measurement(self) -> bool:
        return bool(self.flags & FLAG_MEASUREMENT)

    @property
    def is_custom_data(self) -> bool:
        return bool(self.flags & FLAG_CUSTOM_DATA)

    @property
    def is_subtitle(self) -> bool:
        return bool(self.flags & FLAG_SUBTITLE)

    @property
    def is_binding_frame(self) -> bool:
        return bool(self.flags & FLAG_BINDING)

    @property
    def mac_address(self) -> Optional[str]:
        """MAC address as lowercase colon separated string."""
        if self.mac is None:
            return None
        return ':'.join(f"{b:02x}" for b in self.mac)

    def measurement(self) -> Optional[Measurement]:
        """
        Decode the embedded measurement sub-record.

        Returns:
            Optional[Measurement]: The single reading carried, None without a measurement flag

        Raises:
            DecodeError: If the measurement kind is not known
            TruncatedDataError: If the payload is too short for its kind
        """
        if not self.has_measurement:
            return None

        frame = RawFrame(self.measurement_data)
        kind = self.measurement_id
        if kind == MEASUREMENT_TEMPERATURE:
            return Measurement(temperature=Temperature(frame.read_int16("temperature")))
        if kind == MEASUREMENT_BRIGHTNESS:
            return Measurement(brightness=frame.read_uint16("brightness"))
        if kind == MEASUREMENT_MOISTURE:
            return Measurement(moisture=frame.read_uint8("moisture"))
        if kind == MEASUREMENT_CONDUCTIVITY:
            return Measurement(conductivity=Conductivity(frame.read_uint16("conductivity")))

        raise DecodeError(f"unknown measurement id 0x{kind:04x}: {self.measurement_data.hex(' ')}")


class AdvertisementClassifier:
    """
    Decides whether a broadcast comes from a Flower Care sensor and turns it
    into a Sensor, decoding the embedded measurement where present.
    """

    def __init__(self, settings: ScanSettings, logger, performance_monitor):
        self.settings = settings
        self.logger = logger
        self.performance_monitor = performance_monitor

    def is_flower_care(self, advertisement: Advertisement) -> bool:
        if advertisement.name == DEVICE_NAME:
            return True
        return advertisement.address.upper().startswith(DEVICE_OUI)

    def classify(self, advertisement: Advertisement) -> Optional[Sensor]:
        """
        Classify one broadcast.

        Args:
            advertisement: Broadcast as received from the radio

        Returns:
            Optional[Sensor]: The sensor, or None if the broadcast is rejected
        """
        # Unknown connectability is accepted
        if advertisement.connectable is False:
            return None

        if not self.is_flower_care(advertisement):
            return None

        name = advertisement.name or ""
        if self.settings.sensor_names:
            override = self.settings.name_for(advertisement.address)
            if override is None:
                return None
            name = override

        return Sensor(
            address=advertisement.address.upper(),
            name=name,
            rssi=advertisement.rssi,
            measurement=self._decode_measurement(advertisement),
        )

    def _decode_measurement(self, advertisement: Advertisement) -> Optional[Measurement]:
        payload = advertisement.service_data.get(XIAOMI_SERVICE_UUID)
        if not payload:
            return None

        try:
            return AdvertisementFrame.decode(payload).measurement()
        except FrameError as e:
            self.logger.warning(f"Undecodable advertisement from {advertisement.address}: {e}")
            self.performance_monitor.record_metric("advertisement_decode_errors", 1)
            return None
