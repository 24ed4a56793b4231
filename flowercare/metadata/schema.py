"""
Pydantic schemas for Flower Care sensor metadata.
Defines the structure and validation rules of the persisted sensor state.
"""

import re
from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator


MAC_PATTERN = re.compile(r'^([0-9A-Fa-f]{2}[:-]){5}([0-9A-Fa-f]{2})$')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SensorMetadata(BaseModel):
    """Persisted state of a single Flower Care sensor."""
    name: str = Field("", max_length=100, description="Human-readable sensor name")
    discovered_at: datetime = Field(default_factory=utcnow, description="When sensor was first discovered")
    last_seen: Optional[datetime] = Field(None, description="Last time sensor was detected")
    firmware_version: Optional[str] = Field(None, description="Sensor firmware version")
    battery_level: Optional[int] = Field(None, ge=0, le=100, description="Battery percentage")
    history_pointer: Optional[int] = Field(
        None, ge=0, description="Last synchronized history position, 0 when fully synchronized"
    )
    notes: str = Field("", max_length=500, description="Additional notes")

    @field_validator('name')
    @classmethod
    def strip_name(cls, v: str) -> str:
        return v.strip()


class MetadataFile(BaseModel):
    """Root metadata file structure."""
    version: str = Field("1.0", description="Schema version")
    created_at: datetime = Field(default_factory=utcnow, description="File creation timestamp")
    last_updated: datetime = Field(default_factory=utcnow, description="Last update timestamp")
    sensors: Dict[str, SensorMetadata] = Field(default_factory=dict, description="Sensor metadata by MAC address")

    @field_validator('sensors')
    @classmethod
    def validate_mac_addresses(cls, v: Dict[str, SensorMetadata]) -> Dict[str, SensorMetadata]:
        """Validate MAC address format in sensor keys."""
        for mac_address in v.keys():
            if not MAC_PATTERN.match(mac_address):
                raise ValueError(f'Invalid MAC address format: {mac_address}')
        return v

    def update_timestamp(self):
        self.last_updated = utcnow()

    def get_or_add_sensor(self, mac_address: str, name: str = "") -> SensorMetadata:
        """
        Get the metadata of a sensor, creating an entry on first sight.

        Args:
            mac_address: Normalized MAC address of the sensor
            name: Name used when the entry is created

        Returns:
            SensorMetadata: The existing or created entry
        """
        sensor = self.sensors.get(mac_address)
        if sensor is None:
            sensor = SensorMetadata(name=name)
            self.sensors[mac_address] = sensor
            self.update_timestamp()
        return sensor

