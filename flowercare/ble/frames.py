"""
Binary frame decoding for Flower Care sensors.
Turns raw characteristic and advertisement payloads into typed measurement,
firmware and history structures. Every decoder here is pure: no I/O, no state.
"""

import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class FrameError(Exception):
    """Base exception for malformed or unrecognized payloads."""
    pass


class TruncatedDataError(FrameError):
    """Raised when a buffer is shorter than its layout requires."""
    pass


class DecodeError(FrameError):
    """Raised when a payload is well-formed but cannot be interpreted."""
    pass


class RawFrame:
    """
    Read-only view over a byte buffer with a forward-moving cursor.

    The underlying bytes are never modified; only the cursor advances.
    """

    def __init__(self, data: bytes, offset: int = 0):
        self._data = bytes(data)
        self._offset = offset

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def __len__(self) -> int:
        return len(self._data)

    def _take(self, size: int, what: str) -> bytes:
        if self.remaining < size:
            raise TruncatedDataError(
                f"{what}: need {size} bytes at offset {self._offset}, {self.remaining} available"
            )
        chunk = self._data[self._offset:self._offset + size]
        self._offset += size
        return chunk

    def skip(self, size: int, what: str = "padding"):
        self._take(size, what)

    def read_bytes(self, size: int, what: str = "bytes") -> bytes:
        return self._take(size, what)

    def read_rest(self) -> bytes:
        return self._take(self.remaining, "rest")

    def read_uint8(self, what: str = "uint8") -> int:
        return self._take(1, what)[0]

    def read_uint16(self, what: str = "uint16") -> int:
        return struct.unpack('<H', self._take(2, what))[0]

    def read_int16(self, what: str = "int16") -> int:
        return struct.unpack('<h', self._take(2, what))[0]

    def read_uint32(self, what: str = "uint32") -> int:
        return struct.unpack('<I', self._take(4, what))[0]


class Temperature(int):
    """Raw signed temperature in tenths of a degree Celsius."""

    @property
    def value(self) -> float:
        return int(self) / 10

    def __str__(self) -> str:
        return f"{self.value:.1f}"

    def __repr__(self) -> str:
        return f"Temperature({int(self)})"


class Conductivity(int):
    """Raw soil conductivity in units of 0.0001 S/m."""

    @property
    def value(self) -> float:
        return int(self) / 10000

    def __str__(self) -> str:
        return f"{self.value:.4f}"

    def __repr__(self) -> str:
        return f"Conductivity({int(self)})"


@dataclass
class Measurement:
    """Sensor readings; a field is None when the source frame did not carry it."""
    temperature: Optional[Temperature] = None   # 0.1 °C
    moisture: Optional[int] = None              # %
    brightness: Optional[int] = None            # lux
    conductivity: Optional[Conductivity] = None  # 0.0001 S/m

    def is_empty(self) -> bool:
        return all(v is None for v in (self.temperature, self.moisture, self.brightness, self.conductivity))

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form; scaled values are rounded to the device resolution."""
        data = {}
        if self.temperature is not None:
            data["temperature"] = round(self.temperature.value, 1)
        if self.moisture is not None:
            data["moisture"] = self.moisture
        if self.brightness is not None:
            data["brightness"] = self.brightness
        if self.conductivity is not None:
            data["conductivity"] = round(self.conductivity.value, 4)
        return data

    def describe(self) -> str:
        return (
            f"temperature={self.temperature} brightness={self.brightness} "
            f"moisture={self.moisture} conductivity={self.conductivity}"
        )


@dataclass
class Firmware:
    """Battery level and firmware version of a sensor."""
    version: str
    battery: int  # %

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.version, "battery": self.battery}


@dataclass
class HistoricMeasurement:
    """A logged measurement with the device-clock timestamp it was taken at."""
    device_time: int  # seconds on the device clock
    measurement: Measurement

    def wall_clock(self, time_diff: float) -> datetime:
        """Convert the device timestamp using the offset between local and device clock."""
        return datetime.fromtimestamp(self.device_time + time_diff, tz=timezone.utc)


MEASUREMENT_BODY_SIZE = 10
FIRMWARE_MIN_SIZE = 3
HISTORIC_MEASUREMENT_MIN_SIZE = 4 + MEASUREMENT_BODY_SIZE


def read_measurement_body(frame: RawFrame) -> Measurement:
    """
    Read a measurement body from the frame's current position.

    Layout: ``TT TT ?? LL LL ?? ?? MM CC CC`` followed by ignored bytes.
    """
    temperature = frame.read_int16("temperature")
    frame.skip(1)
    brightness = frame.read_uint16("brightness")
    frame.skip(2)
    moisture = frame.read_uint8("moisture")
    conductivity = frame.read_uint16("conductivity")

    return Measurement(
        temperature=Temperature(temperature),
        moisture=moisture,
        brightness=brightness,
        conductivity=Conductivity(conductivity),
    )


def decode_measurement(data: bytes) -> Measurement:
    """Decode the live measurement attribute."""
    return read_measurement_body(RawFrame(data))


def decode_firmware(data: bytes) -> Firmware:
    """
    Decode the firmware/battery attribute.

    Byte 0 is the battery level, byte 1 is unused and the rest is the version string.
    """
    if len(data) < FIRMWARE_MIN_SIZE:
        raise TruncatedDataError(f"firmware: data not long enough: {len(data)} < {FIRMWARE_MIN_SIZE}")

    frame = RawFrame(data)
    battery = frame.read_uint8("battery")
    frame.skip(1)
    version = frame.read_rest().decode("ascii", errors="replace")
    return Firmware(version=version, battery=battery)


def decode_historic_measurement(data: bytes) -> HistoricMeasurement:
    """Decode one history record: 4-byte device timestamp followed by a measurement body."""
    frame = RawFrame(data)
    device_time = frame.read_uint32("timestamp")
    return HistoricMeasurement(device_time=device_time, measurement=read_measurement_body(frame))


def decode_history_length(data: bytes) -> int:
    """Decode the number of entries in the device log."""
    return RawFrame(data).read_uint16("history length")


def decode_device_time(data: bytes) -> int:
    """Decode the device clock in seconds."""
    return RawFrame(data).read_uint32("device time")
