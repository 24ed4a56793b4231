"""
Configuration management for the Flower Care Sensor Service.
Loads configuration from environment variables with validation and defaults.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Union
from dotenv import load_dotenv
import logging


DEFAULT_SCAN_TIMEOUT = 5.0
DEFAULT_SESSION_TIMEOUT = 30.0
DEFAULT_HISTORY_BATCH_LIMIT = 50


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def normalize_address(address: str) -> str:
    """Normalize a Bluetooth address to uppercase with colon separators."""
    clean = ''.join(c for c in address.upper() if c.isalnum())
    if len(clean) != 12:
        raise ConfigurationError(f"Invalid Bluetooth address: '{address}'")
    return ':'.join(clean[i:i + 2] for i in range(0, 12, 2))


def parse_sensor_names(entries: Iterable[str]) -> Dict[str, str]:
    """
    Parse operator supplied ``address=name`` overrides.

    Args:
        entries: Strings like ``c4:7c:8d:aa:bb:cc=my-bedroom-plant``

    Returns:
        Dict[str, str]: Names keyed by normalized address

    Raises:
        ConfigurationError: If an entry is malformed
    """
    names = {}
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        address, sep, name = entry.partition('=')
        if not sep or not name.strip():
            raise ConfigurationError(f"Sensor name must look like 'address=name', got '{entry}'")
        names[normalize_address(address)] = name.strip()
    return names


@dataclass(frozen=True)
class ScanSettings:
    """Immutable per-operation settings handed down to the discovery and sync code."""
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT
    expected_sensors: int = 0
    sensor_names: Mapping[str, str] = field(default_factory=dict)
    session_timeout: float = DEFAULT_SESSION_TIMEOUT
    history_batch_limit: int = DEFAULT_HISTORY_BATCH_LIMIT

    @property
    def target_count(self) -> int:
        """Number of sensors after which scanning stops, 0 means run until the deadline."""
        if self.expected_sensors > 0:
            return self.expected_sensors
        return len(self.sensor_names)

    def name_for(self, address: str) -> Optional[str]:
        return self.sensor_names.get(address.upper())


class Config:
    """
    Configuration manager that loads settings from environment variables.
    Provides validation and type conversion for configuration values.
    """

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration manager.

        Args:
            env_file: Path to .env file (defaults to .env in project root)
        """
        self.logger = logging.getLogger(__name__)

        # Load environment variables
        if env_file is None:
            env_file = Path(__file__).parent.parent.parent / ".env"

        if Path(env_file).exists():
            load_dotenv(env_file)
            self.logger.info(f"Loaded configuration from {env_file}")
        else:
            self.logger.debug(f"Environment file {env_file} not found, using system environment")

    def get_str(self, key: str, default: Optional[str] = None) -> str:
        """Get string configuration value."""
        value = os.getenv(key, default)
        if value is None:
            raise ConfigurationError(f"Required configuration key '{key}' not found")
        return value

    def get_int(self, key: str, default: Optional[int] = None) -> int:
        """Get integer configuration value."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            return default

        try:
            return int(value)
        except ValueError:
            raise ConfigurationError(f"Configuration key '{key}' must be an integer, got '{value}'")

    def get_float(self, key: str, default: Optional[float] = None) -> float:
        """Get float configuration value."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            return default

        try:
            return float(value)
        except ValueError:
            raise ConfigurationError(f"Configuration key '{key}' must be a float, got '{value}'")

    def get_bool(self, key: str, default: Optional[bool] = None) -> bool:
        """Get boolean configuration value."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            return default

        return value.lower() in ('true', '1', 'yes', 'on', 'enabled')

    def get_path(self, key: str, default: Optional[Union[str, Path]] = None) -> Path:
        """Get path configuration value."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            value = str(default)

        path = Path(value)
        if not path.is_absolute():
            # Make relative paths relative to the working directory
            path = Path.cwd() / path

        return path

    # InfluxDB Configuration
    @property
    def influxdb_host(self) -> str:
        return self.get_str("INFLUXDB_HOST", "localhost")

    @property
    def influxdb_port(self) -> int:
        return self.get_int("INFLUXDB_PORT", 8086)

    @property
    def influxdb_token(self) -> str:
        return self.get_str("INFLUXDB_TOKEN")

    @property
    def influxdb_org(self) -> str:
        return self.get_str("INFLUXDB_ORG")

    @property
    def influxdb_bucket(self) -> str:
        return self.get_str("INFLUXDB_BUCKET", "flowercare")

    @property
    def influxdb_timeout(self) -> int:
        return self.get_int("INFLUXDB_TIMEOUT", 30)

    @property
    def influxdb_verify_ssl(self) -> bool:
        return self.get_bool("INFLUXDB_VERIFY_SSL", True)

    @property
    def influxdb_enable_gzip(self) -> bool:
        return self.get_bool("INFLUXDB_ENABLE_GZIP", True)

    @property
    def influxdb_batch_size(self) -> int:
        return self.get_int("INFLUXDB_BATCH_SIZE", 100)

    @property
    def influxdb_retry_attempts(self) -> int:
        return self.get_int("INFLUXDB_RETRY_ATTEMPTS", 3)

    @property
    def influxdb_retry_delay(self) -> float:
        return self.get_float("INFLUXDB_RETRY_DELAY", 2.0)

    @property
    def influxdb_retry_exponential_base(self) -> float:
        return self.get_float("INFLUXDB_RETRY_EXPONENTIAL_BASE", 2.0)

    # BLE Configuration
    @property
    def ble_adapter(self) -> str:
        return self.get_str("BLE_ADAPTER", "auto")

    @property
    def ble_scan_timeout(self) -> float:
        return self.get_float("BLE_SCAN_TIMEOUT", DEFAULT_SCAN_TIMEOUT)

    @property
    def ble_expected_sensors(self) -> int:
        return self.get_int("BLE_EXPECTED_SENSORS", 0)

    @property
    def ble_sensor_names(self) -> Dict[str, str]:
        return parse_sensor_names(self.get_str("BLE_SENSOR_NAMES", "").split(','))

    @property
    def ble_session_timeout(self) -> float:
        return self.get_float("BLE_SESSION_TIMEOUT", DEFAULT_SESSION_TIMEOUT)

    @property
    def ble_connect_timeout(self) -> float:
        return self.get_float("BLE_CONNECT_TIMEOUT", 20.0)

    @property
    def history_batch_limit(self) -> int:
        return self.get_int("HISTORY_BATCH_LIMIT", DEFAULT_HISTORY_BATCH_LIMIT)

    # Output Configuration
    @property
    def output(self) -> str:
        return self.get_str("OUTPUT", "json").lower()

    @property
    def output_buffer_size(self) -> int:
        return self.get_int("OUTPUT_BUFFER_SIZE", 1)

    # Metadata Configuration
    @property
    def metadata_file(self) -> Path:
        return self.get_path("METADATA_FILE", "./data/sensors.json")

    @property
    def backup_dir(self) -> Path:
        return self.get_path("BACKUP_DIR", "./backups")

    @property
    def metadata_backup_count(self) -> int:
        return self.get_int("METADATA_BACKUP_COUNT", 5)

    # Logging Configuration
    @property
    def log_level(self) -> str:
        return self.get_str("LOG_LEVEL", "INFO").upper()

    @property
    def log_dir(self) -> Path:
        return self.get_path("LOG_DIR", "./logs")

    @property
    def log_max_file_size(self) -> int:
        return self.get_int("LOG_MAX_FILE_SIZE", 10 * 1024 * 1024)  # 10MB

    @property
    def log_backup_count(self) -> int:
        return self.get_int("LOG_BACKUP_COUNT", 5)

    @property
    def log_enable_console(self) -> bool:
        return self.get_bool("LOG_ENABLE_CONSOLE", True)

    def scan_settings(self, **overrides) -> ScanSettings:
        """
        Build the immutable settings for one scan/sync operation.

        Args:
            **overrides: Values taken from the command line; ``None`` keeps the configured value

        Returns:
            ScanSettings: Settings passed down to the core
        """
        values = {
            "scan_timeout": self.ble_scan_timeout,
            "expected_sensors": self.ble_expected_sensors,
            "sensor_names": self.ble_sensor_names,
            "session_timeout": self.ble_session_timeout,
            "history_batch_limit": self.history_batch_limit,
        }
        for key, value in overrides.items():
            if key not in values:
                raise ConfigurationError(f"Unknown scan setting '{key}'")
            if value is not None:
                values[key] = value
        return ScanSettings(**values)

    def validate_configuration(self, require_influxdb: bool = False) -> bool:
        """
        Validate all configuration values.

        Args:
            require_influxdb: Also check the InfluxDB connection settings

        Returns:
            bool: True if configuration is valid

        Raises:
            ConfigurationError: If configuration is invalid
        """
        errors = []

        # Validate BLE configuration
        try:
            if self.ble_scan_timeout <= 0:
                errors.append("BLE_SCAN_TIMEOUT must be positive")
            if self.ble_expected_sensors < 0:
                errors.append("BLE_EXPECTED_SENSORS cannot be negative")
            if self.ble_session_timeout <= 0:
                errors.append("BLE_SESSION_TIMEOUT must be positive")
            if self.history_batch_limit < 1:
                errors.append("HISTORY_BATCH_LIMIT must be at least 1")
            self.ble_sensor_names
        except ConfigurationError as e:
            errors.append(str(e))

        # Validate output configuration
        try:
            if self.output not in ('json', 'influxdb'):
                errors.append("OUTPUT must be one of ['json', 'influxdb']")
            if self.output_buffer_size < 1:
                errors.append("OUTPUT_BUFFER_SIZE must be at least 1")
        except ConfigurationError as e:
            errors.append(str(e))

        # Validate InfluxDB configuration
        if require_influxdb:
            try:
                if not self.influxdb_host:
                    errors.append("INFLUXDB_HOST cannot be empty")
                if not self.influxdb_token or self.influxdb_token == "your_influxdb_token_here":
                    errors.append("INFLUXDB_TOKEN must be set to a valid token")
                if not self.influxdb_org or self.influxdb_org == "your_organization_name":
                    errors.append("INFLUXDB_ORG must be set to a valid organization name")
                if not self.influxdb_bucket:
                    errors.append("INFLUXDB_BUCKET cannot be empty")
                if self.influxdb_port < 1 or self.influxdb_port > 65535:
                    errors.append("INFLUXDB_PORT must be between 1 and 65535")
            except ConfigurationError as e:
                errors.append(str(e))

        # Validate log level
        try:
            valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
            if self.log_level not in valid_levels:
                errors.append(f"LOG_LEVEL must be one of {valid_levels}")
        except ConfigurationError as e:
            errors.append(str(e))

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"- {error}" for error in errors))

        return True

    def get_summary(self) -> dict:
        """Get configuration summary for logging/debugging."""
        return {
            'ble': {
                'adapter': self.ble_adapter,
                'scan_timeout': self.ble_scan_timeout,
                'expected_sensors': self.ble_expected_sensors,
                'sensor_names': self.ble_sensor_names,
                'session_timeout': self.ble_session_timeout,
                'history_batch_limit': self.history_batch_limit,
            },
            'output': {
                'type': self.output,
                'buffer_size': self.output_buffer_size,
            },
            'metadata': {
                'file_path': str(self.metadata_file),
                'backup_dir': str(self.backup_dir),
            },
            'logging': {
                'level': self.log_level,
                'dir': str(self.log_dir),
                'enable_console': self.log_enable_console,
            },
        }
