"""
Logging configuration for the Flower Care Sensor Service.
Provides logging setup with console and rotating file handlers plus lightweight metrics.
"""

import logging
import logging.handlers
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional
import colorlog
from datetime import datetime


class ProductionLogger:
    """
    Logging setup for production deployment with a colored console handler,
    a rotating log file and a separate performance log.
    """

    def __init__(self,
                 app_name: str = "flowercare",
                 log_dir: str = "./logs",
                 log_level: str = "INFO",
                 max_file_size: int = 10 * 1024 * 1024,  # 10MB
                 backup_count: int = 5,
                 enable_console: bool = True):

        self.app_name = app_name
        self.log_dir = Path(log_dir)
        self.log_level = getattr(logging, log_level.upper())
        self.max_file_size = max_file_size
        self.backup_count = backup_count
        self.enable_console = enable_console

        # Create log directory
        self.log_dir.mkdir(parents=True, exist_ok=True)

        # Setup loggers
        self._setup_root_logger()
        self._setup_component_loggers()

    def _setup_root_logger(self):
        """Configure root logger with multiple handlers."""
        root_logger = logging.getLogger()
        root_logger.setLevel(self.log_level)

        # Clear existing handlers
        root_logger.handlers.clear()

        # Console handler with colors, on stderr so stdout stays free for JSON output
        if self.enable_console:
            console_handler = colorlog.StreamHandler(sys.stderr)
            console_handler.setLevel(self.log_level)
            console_formatter = colorlog.ColoredFormatter(
                '%(log_color)s%(asctime)s [%(levelname)8s] %(name)s: %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S',
                log_colors={
                    'DEBUG': 'cyan',
                    'INFO': 'green',
                    'WARNING': 'yellow',
                    'ERROR': 'red',
                    'CRITICAL': 'red,bg_white',
                }
            )
            console_handler.setFormatter(console_formatter)
            root_logger.addHandler(console_handler)

        # File handler with rotation
        file_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / f"{self.app_name}.log",
            maxBytes=self.max_file_size,
            backupCount=self.backup_count
        )
        file_handler.setLevel(self.log_level)
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)8s] %(name)s [%(process)d:%(thread)d] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)

    def _setup_component_loggers(self):
        """Configure the dedicated performance log."""
        perf_logger = logging.getLogger('flowercare.performance')
        perf_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / "performance.log",
            maxBytes=self.max_file_size,
            backupCount=self.backup_count
        )
        perf_handler.setFormatter(logging.Formatter(
            '%(asctime)s PERF: %(message)s'
        ))
        perf_logger.addHandler(perf_handler)

    def debug(self, message: str, *args, **kwargs):
        """Log debug message."""
        logging.getLogger().debug(message, *args, **kwargs)

    def info(self, message: str, *args, **kwargs):
        """Log info message."""
        logging.getLogger().info(message, *args, **kwargs)

    def warning(self, message: str, *args, **kwargs):
        """Log warning message."""
        logging.getLogger().warning(message, *args, **kwargs)

    def error(self, message: str, *args, **kwargs):
        """Log error message."""
        logging.getLogger().error(message, *args, **kwargs)

    def critical(self, message: str, *args, **kwargs):
        """Log critical message."""
        logging.getLogger().critical(message, *args, **kwargs)


class PerformanceMonitor:
    """
    Performance monitoring and metrics collection for production debugging.
    """

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger('flowercare.performance')
        self.metrics = {
            'ble_scan_times': [],
            'sync_passes': [],
        }
        self.start_time = datetime.now()

    def log_ble_scan(self, duration: float, devices_found: int, success: bool):
        """Log BLE scan performance metrics."""
        self.metrics['ble_scan_times'].append({
            'duration': duration,
            'devices_found': devices_found,
            'success': success,
            'timestamp': datetime.now()
        })

        self.logger.info(
            f"BLE_SCAN duration={duration:.2f}s devices={devices_found} success={success}"
        )

    def log_sync_pass(self, address: str, entries: int, history_pointer: Optional[int]):
        """Log the outcome of one history synchronization pass."""
        self.metrics['sync_passes'].append({
            'address': address,
            'entries': entries,
            'history_pointer': history_pointer,
            'timestamp': datetime.now()
        })

        self.logger.info(
            f"SYNC_PASS address={address} entries={entries} history_pointer={history_pointer}"
        )

    def get_performance_summary(self) -> dict:
        """Generate performance summary for monitoring dashboards."""
        summary = {
            'uptime_seconds': (datetime.now() - self.start_time).total_seconds(),
            'ble_scans': {
                'total': len(self.metrics['ble_scan_times']),
                'successful': sum(1 for scan in self.metrics['ble_scan_times'] if scan['success']),
                'avg_duration': 0,
                'avg_devices_found': 0
            },
            'sync_passes': {
                'total': len(self.metrics['sync_passes']),
                'entries_synchronized': sum(p['entries'] for p in self.metrics['sync_passes']),
            }
        }

        successful_scans = [scan for scan in self.metrics['ble_scan_times'] if scan['success']]
        if successful_scans:
            summary['ble_scans']['avg_duration'] = sum(scan['duration'] for scan in successful_scans) / len(successful_scans)
            summary['ble_scans']['avg_devices_found'] = sum(scan['devices_found'] for scan in successful_scans) / len(successful_scans)

        return summary

    def record_metric(self, metric_name: str, value: float):
        """Record a metric value."""
        if metric_name not in self.metrics:
            self.metrics[metric_name] = []

        self.metrics[metric_name].append({
            'value': value,
            'timestamp': datetime.now()
        })

        self.logger.debug(f"METRIC {metric_name}={value}")

    def measure_time(self, operation_name: str):
        """Context manager for measuring operation time."""

        @contextmanager
        def timer():
            start_time = time.time()
            try:
                yield
            finally:
                duration = time.time() - start_time
                self.record_metric(f"{operation_name}_duration", duration)
                self.logger.info(f"TIMING {operation_name}={duration:.3f}s")

        return timer()


def setup_logging(config) -> ProductionLogger:
    """
    Setup logging for the Flower Care Sensor Service using configuration.

    Args:
        config: Configuration instance

    Returns:
        ProductionLogger instance
    """
    return ProductionLogger(
        log_level=config.log_level,
        log_dir=str(config.log_dir),
        max_file_size=config.log_max_file_size,
        backup_count=config.log_backup_count,
        enable_console=config.log_enable_console
    )
