"""
Metadata manager for Flower Care sensor state.
Persists sensor names, firmware details and history cursors in a JSON file
with file locking, atomic replacement and rotating backups.
"""

import fcntl
import json
import os
import shutil
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from pydantic import ValidationError

from .schema import MetadataFile, SensorMetadata, utcnow
from ..ble.frames import Firmware
from ..ble.sensors import Sensor
from ..utils.config import Config, ConfigurationError, normalize_address
from ..utils.logging import ProductionLogger


class MetadataError(Exception):
    """Base exception for metadata operations."""
    pass


class MetadataFileError(MetadataError):
    """Exception for file operation errors."""
    pass


class MetadataValidationError(MetadataError):
    """Exception for validation errors."""
    pass


class MetadataManager:
    """
    Manages sensor metadata with JSON file persistence and concurrent access safety.

    Features:
    - File locking for concurrent access safety
    - Automatic backup and recovery
    - Validation using Pydantic schemas
    - Loading and storing history cursors of discovered sensors
    """

    def __init__(self, config: Config, logger: ProductionLogger):
        """
        Initialize metadata manager.

        Args:
            config: Application configuration
            logger: Logger instance
        """
        self.config = config
        self.logger = logger
        self.metadata_file = Path(config.metadata_file)
        self.backup_dir = Path(config.backup_dir)
        self.backup_count = config.metadata_backup_count
        self.lock_timeout = 30  # seconds
        self._metadata: Optional[MetadataFile] = None

        self.metadata_file.parent.mkdir(parents=True, exist_ok=True)
        self.backup_dir.mkdir(parents=True, exist_ok=True)

        self.logger.info(f"MetadataManager initialized with file: {self.metadata_file}")

    @contextmanager
    def _file_lock(self, file_path: Path, mode: str = 'r'):
        """
        Context manager for file locking.

        Args:
            file_path: Path to the file to lock
            mode: File open mode

        Yields:
            file: Opened file handle with lock
        """
        lock_acquired = False
        file_handle = open(file_path, mode)

        try:
            start_time = time.time()
            while time.time() - start_time < self.lock_timeout:
                try:
                    fcntl.flock(file_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except OSError:
                    time.sleep(0.1)

            if not lock_acquired:
                raise MetadataFileError(f"Could not acquire lock for {file_path} within {self.lock_timeout} seconds")

            yield file_handle

        finally:
            if lock_acquired:
                fcntl.flock(file_handle.fileno(), fcntl.LOCK_UN)
            file_handle.close()

    def _create_backup(self) -> Optional[Path]:
        """
        Create a backup of the current metadata file.

        Returns:
            Optional[Path]: Path to backup file or None if failed
        """
        if not self.metadata_file.exists():
            return None

        try:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
            backup_path = self.backup_dir / f"metadata_backup_{timestamp}.json"

            shutil.copy2(self.metadata_file, backup_path)
            self.logger.debug(f"Created backup: {backup_path}")

            self._cleanup_old_backups(self.backup_count)
            return backup_path

        except OSError as e:
            self.logger.error(f"Failed to create backup: {e}")
            return None

    def _backup_files(self):
        backup_files = list(self.backup_dir.glob("metadata_backup_*.json"))
        backup_files.sort(key=lambda x: x.name, reverse=True)
        return backup_files

    def _cleanup_old_backups(self, keep_count: int):
        """
        Remove old backup files, keeping only the most recent ones.

        Args:
            keep_count: Number of backups to keep
        """
        try:
            for backup_file in self._backup_files()[keep_count:]:
                backup_file.unlink()
                self.logger.debug(f"Removed old backup: {backup_file}")
        except OSError as e:
            self.logger.warning(f"Failed to cleanup old backups: {e}")

    def _load_from_file(self) -> MetadataFile:
        """
        Load metadata from file with validation.

        Returns:
            MetadataFile: Loaded and validated metadata

        Raises:
            MetadataFileError: If the file cannot be read
        """
        if not self.metadata_file.exists():
            self.logger.info("Metadata file does not exist, starting with empty metadata")
            return MetadataFile()

        try:
            with self._file_lock(self.metadata_file, 'r') as f:
                data = json.load(f)
            metadata = MetadataFile.model_validate(data)
            self.logger.debug(f"Loaded metadata with {len(metadata.sensors)} sensors")
            return metadata

        except (json.JSONDecodeError, ValidationError) as e:
            self.logger.error(f"Invalid metadata file: {e}")
            return self._recover_from_backup()

        except OSError as e:
            self.logger.error(f"Failed to load metadata: {e}")
            raise MetadataFileError(f"Failed to load metadata: {e}") from e

    def _save_to_file(self, metadata: MetadataFile):
        """
        Save metadata to file with backup.

        Args:
            metadata: Metadata to save

        Raises:
            MetadataFileError: If save operation fails
        """
        temp_file = self.metadata_file.with_suffix('.tmp')
        try:
            self._create_backup()
            metadata.update_timestamp()

            with self._file_lock(temp_file, 'w') as f:
                json.dump(
                    metadata.model_dump(mode='json'),
                    f,
                    indent=2,
                    ensure_ascii=False
                )
                f.flush()
                os.fsync(f.fileno())

            # Atomic move
            temp_file.replace(self.metadata_file)
            self.logger.debug(f"Saved metadata with {len(metadata.sensors)} sensors")

        except OSError as e:
            self.logger.error(f"Failed to save metadata: {e}")
            if temp_file.exists():
                temp_file.unlink()
            raise MetadataFileError(f"Failed to save metadata: {e}") from e

    def _recover_from_backup(self) -> MetadataFile:
        """
        Attempt to recover metadata from backup files.

        Returns:
            MetadataFile: Recovered metadata or empty metadata if no valid backup
        """
        self.logger.warning("Attempting to recover from backup files")

        for backup_file in self._backup_files():
            try:
                with open(backup_file, 'r') as f:
                    metadata = MetadataFile.model_validate(json.load(f))
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                self.logger.warning(f"Failed to recover from {backup_file}: {e}")
                continue

            self.logger.info(f"Successfully recovered from backup: {backup_file}")
            return metadata

        self.logger.error("No valid backup found, starting with empty metadata")
        return MetadataFile()

    def load(self) -> MetadataFile:
        """
        Load metadata from file or cache.

        Returns:
            MetadataFile: Current metadata
        """
        if self._metadata is None:
            self._metadata = self._load_from_file()
        return self._metadata

    def save(self):
        """
        Save current metadata to file.

        Raises:
            MetadataError: If no metadata is loaded
        """
        if self._metadata is None:
            raise MetadataError("No metadata loaded to save")

        self._save_to_file(self._metadata)

    def _key(self, address: str) -> Optional[str]:
        try:
            return normalize_address(address)
        except ConfigurationError:
            # Some platforms report opaque device ids instead of MAC addresses
            self.logger.debug(f"Not persisting state for non-MAC address {address}")
            return None

    def get_sensor(self, address: str) -> Optional[SensorMetadata]:
        key = self._key(address)
        if key is None:
            return None
        return self.load().sensors.get(key)

    def get_all_sensors(self) -> Dict[str, SensorMetadata]:
        return self.load().sensors.copy()

    def apply_cursors(self, sensors: Iterable[Sensor]) -> int:
        """
        Copy stored history cursors into freshly discovered sensors.

        Args:
            sensors: Discovered sensors

        Returns:
            int: Number of sensors that resumed from a stored cursor
        """
        resumed = 0
        for sensor in sensors:
            stored = self.get_sensor(sensor.address)
            if stored is None or stored.history_pointer is None:
                continue
            sensor.history_pointer = stored.history_pointer
            resumed += 1
            self.logger.info(f"Resuming history of {sensor.address} at position {stored.history_pointer}")
        return resumed

    def record_sensor(self, sensor: Sensor, save: bool = True) -> Optional[SensorMetadata]:
        """
        Store name and last seen time of a sensor.

        History cursors are stored separately through ``record_cursor``, once
        the entries they cover are persisted.

        Args:
            sensor: Sensor to record
            save: Write the file immediately

        Returns:
            Optional[SensorMetadata]: Updated entry, None if the address cannot be persisted
        """
        key = self._key(sensor.address)
        if key is None:
            return None

        metadata = self.load()
        entry = metadata.get_or_add_sensor(key, sensor.name)
        if sensor.name:
            entry.name = sensor.name
        entry.last_seen = utcnow()
        metadata.update_timestamp()

        if save:
            self.save()
        return entry

    def record_sensors(self, sensors: Iterable[Sensor]):
        """Record all sensors with a single write."""
        for sensor in sensors:
            self.record_sensor(sensor, save=False)
        self.save()

    def record_cursor(self, address: str, position: Optional[int], save: bool = True):
        """
        Store the last persisted history position of a sensor.

        Args:
            address: Sensor address
            position: Log position, None leaves the stored cursor unchanged
            save: Write the file immediately
        """
        key = self._key(address)
        if key is None or position is None:
            return

        metadata = self.load()
        entry = metadata.get_or_add_sensor(key)
        entry.history_pointer = position
        metadata.update_timestamp()

        if save:
            self.save()

    def record_cursors(self, cursors: Mapping[str, int]):
        """Store several cursors with a single write."""
        for address, position in cursors.items():
            self.record_cursor(address, position, save=False)
        self.save()

    def record_firmware(self, address: str, firmware: Firmware, save: bool = True):
        key = self._key(address)
        if key is None:
            return

        metadata = self.load()
        entry = metadata.get_or_add_sensor(key)
        entry.firmware_version = firmware.version
        entry.battery_level = min(max(firmware.battery, 0), 100)
        metadata.update_timestamp()

        if save:
            self.save()

    def reset_history(self, address: str) -> bool:
        """
        Forget the history cursor of a sensor so the next sync starts from the newest entry.

        Returns:
            bool: True if a cursor was removed
        """
        key = self._key(address)
        if key is None:
            raise MetadataValidationError(f"Invalid MAC address: {address}")

        entry = self.load().sensors.get(key)
        if entry is None or entry.history_pointer is None:
            return False

        entry.history_pointer = None
        self.save()
        self.logger.info(f"Reset history cursor of {key}")
        return True
