"""
Sensor identity and the address-ordered sensor set built during discovery.
"""

from bisect import bisect_left
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from .frames import Measurement


@dataclass
class Sensor:
    """A discovered sensor plus its history synchronization state."""
    address: str
    name: str
    rssi: Optional[int] = None
    measurement: Optional[Measurement] = None  # embedded in the last advertisement
    # Last successfully synchronized history position.
    # None: sync not started, 0: fully synchronized.
    history_pointer: Optional[int] = None

    @property
    def finished(self) -> bool:
        return self.history_pointer == 0

    def update_from(self, other: "Sensor"):
        """Refresh the advertisement derived fields, keeping the sync state."""
        self.name = other.name
        self.rssi = other.rssi
        if other.measurement is not None:
            self.measurement = other.measurement


class SensorSet:
    """
    Sensors ordered by address, at most one entry per address.

    Re-inserting a known address refreshes the existing entry in place, so
    positions of other entries never change on replacement.
    """

    def __init__(self):
        self._addresses: List[str] = []
        self._sensors: List[Sensor] = []

    def insert(self, sensor: Sensor) -> Tuple[Sensor, bool]:
        """
        Insert or replace a sensor.

        Args:
            sensor: Sensor to insert

        Returns:
            Tuple[Sensor, bool]: The stored entry and whether the address already existed
        """
        pos = bisect_left(self._addresses, sensor.address)
        if pos < len(self._addresses) and self._addresses[pos] == sensor.address:
            existing = self._sensors[pos]
            existing.update_from(sensor)
            return existing, True

        self._addresses.insert(pos, sensor.address)
        self._sensors.insert(pos, sensor)
        return sensor, False

    def get(self, address: str) -> Optional[Sensor]:
        pos = bisect_left(self._addresses, address)
        if pos < len(self._addresses) and self._addresses[pos] == address:
            return self._sensors[pos]
        return None

    def __contains__(self, address: str) -> bool:
        return self.get(address) is not None

    def __len__(self) -> int:
        return len(self._sensors)

    def __iter__(self) -> Iterator[Sensor]:
        return iter(list(self._sensors))

    def __getitem__(self, index: int) -> Sensor:
        return self._sensors[index]

    def addresses(self) -> List[str]:
        return list(self._addresses)

    def unfinished(self) -> List[Sensor]:
        return [s for s in self._sensors if not s.finished]
