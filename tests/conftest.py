"""
Pytest configuration and shared fixtures for Flower Care Sensor Service tests.
Provides common test fixtures, mock objects, and test utilities.
"""

import pytest
from pathlib import Path
from unittest.mock import Mock, MagicMock

from flowercare.ble.frames import Measurement, Temperature, Conductivity
from flowercare.utils.config import Config, ScanSettings
from flowercare.utils.logging import ProductionLogger, PerformanceMonitor

from tests.fixtures.sensor_data import SensorDataFixtures


@pytest.fixture
def mock_config(tmp_path):
    """Create a mock configuration for testing."""
    config = Mock(spec=Config)

    # BLE configuration
    config.ble_adapter = "auto"
    config.ble_scan_timeout = 0.5
    config.ble_expected_sensors = 0
    config.ble_sensor_names = {}
    config.ble_session_timeout = 5.0
    config.ble_connect_timeout = 5.0
    config.history_batch_limit = 50

    # Metadata configuration
    config.metadata_file = tmp_path / "data" / "sensors.json"
    config.backup_dir = tmp_path / "backups"
    config.metadata_backup_count = 3

    # InfluxDB configuration
    config.influxdb_host = "localhost"
    config.influxdb_port = 8086
    config.influxdb_token = "test-token"
    config.influxdb_org = "test-org"
    config.influxdb_bucket = "flowercare"
    config.influxdb_timeout = 5
    config.influxdb_verify_ssl = True
    config.influxdb_enable_gzip = False
    config.influxdb_batch_size = 2
    config.influxdb_retry_attempts = 2
    config.influxdb_retry_delay = 0.0
    config.influxdb_retry_exponential_base = 2.0

    # Logging configuration
    config.log_level = "DEBUG"
    config.log_dir = Path(tmp_path / "logs")
    config.log_max_file_size = 1024 * 1024  # 1MB
    config.log_backup_count = 2
    config.log_enable_console = False  # Disable console logging in tests

    return config


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing."""
    logger = Mock(spec=ProductionLogger)
    logger.debug = Mock()
    logger.info = Mock()
    logger.warning = Mock()
    logger.error = Mock()
    logger.critical = Mock()
    return logger


@pytest.fixture
def mock_performance_monitor():
    """Create a mock performance monitor for testing."""
    monitor = Mock(spec=PerformanceMonitor)
    monitor.record_metric = Mock()
    monitor.log_ble_scan = Mock()
    monitor.log_sync_pass = Mock()
    monitor.measure_time = Mock()

    # Mock the context manager for measure_time
    mock_context = MagicMock()
    mock_context.__enter__ = Mock(return_value=mock_context)
    mock_context.__exit__ = Mock(return_value=None)
    monitor.measure_time.return_value = mock_context

    return monitor


@pytest.fixture
def scan_settings():
    """Short timeouts so discovery tests finish quickly."""
    return ScanSettings(scan_timeout=0.5, session_timeout=2.0)


@pytest.fixture
def advertisement_samples():
    return SensorDataFixtures.advertisement_samples()


@pytest.fixture
def sample_measurement():
    """Measurement as decoded from the default fixture live data."""
    return Measurement(
        temperature=Temperature(234),
        moisture=30,
        brightness=100,
        conductivity=Conductivity(200),
    )


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on test location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
