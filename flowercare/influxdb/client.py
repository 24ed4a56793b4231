"""
InfluxDB client for Flower Care results.
Handles connection management, buffering, batch writing and retry logic,
and exposes the client as a result sink.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from influxdb_client import InfluxDBClient, Point, WritePrecision
from influxdb_client.client.exceptions import InfluxDBError as ClientError
from influxdb_client.client.write_api import SYNCHRONOUS
from influxdb_client.rest import ApiException

from ..outputs.sink import Result, ResultSink
from ..utils.config import Config
from ..utils.logging import PerformanceMonitor, ProductionLogger


@dataclass
class DataPoint:
    """Data point for InfluxDB storage."""
    measurement: str
    tags: Dict[str, str] = field(default_factory=dict)
    fields: Dict[str, Union[float, int, str, bool]] = field(default_factory=dict)
    timestamp: Optional[datetime] = None


@dataclass
class BatchStats:
    """Statistics for batch operations."""
    points_written: int = 0
    points_failed: int = 0
    batches_sent: int = 0
    batches_failed: int = 0
    last_write_time: Optional[datetime] = None
    total_write_time: float = 0.0


class InfluxDBError(Exception):
    """Base exception for InfluxDB operations."""
    pass


class ConnectionError(InfluxDBError):
    """Exception for connection errors."""
    pass


class WriteError(InfluxDBError):
    """Exception for write operation errors."""
    pass


class FlowerCareInfluxDBClient:
    """
    InfluxDB client for Flower Care results.

    Features:
    - Connection with health check and retry
    - Buffered batch writes
    - Retry logic with exponential backoff
    - Write statistics
    """

    def __init__(self, config: Config, logger: ProductionLogger, performance_monitor: PerformanceMonitor):
        """
        Initialize InfluxDB client.

        Args:
            config: Application configuration
            logger: Logger instance
            performance_monitor: Performance monitoring instance
        """
        self.config = config
        self.logger = logger
        self.performance_monitor = performance_monitor

        self.url = f"http://{config.influxdb_host}:{config.influxdb_port}"
        self.token = config.influxdb_token
        self.org = config.influxdb_org
        self.bucket = config.influxdb_bucket
        self.timeout = config.influxdb_timeout * 1000  # Convert to milliseconds
        self.verify_ssl = config.influxdb_verify_ssl
        self.enable_gzip = config.influxdb_enable_gzip

        self.batch_size = config.influxdb_batch_size

        self.retry_attempts = config.influxdb_retry_attempts
        self.retry_delay = config.influxdb_retry_delay
        self.retry_exponential_base = config.influxdb_retry_exponential_base

        self._client: Optional[InfluxDBClient] = None
        self._write_api = None
        self._is_connected = False
        self._buffer: deque = deque()
        self._stats = BatchStats()
        self._connection_errors = 0

        self.logger.info(f"FlowerCareInfluxDBClient initialized for {self.url}")

    async def connect(self) -> bool:
        """
        Connect to InfluxDB with retry logic.

        Returns:
            bool: True if connection successful

        Raises:
            ConnectionError: If connection fails after all retries
        """
        for attempt in range(self.retry_attempts):
            try:
                self._client = InfluxDBClient(
                    url=self.url,
                    token=self.token,
                    org=self.org,
                    timeout=self.timeout,
                    verify_ssl=self.verify_ssl,
                    enable_gzip=self.enable_gzip
                )
                self._write_api = self._client.write_api(write_options=SYNCHRONOUS)

                if not self._client.ping():
                    raise ConnectionError("Ping failed")

                self._is_connected = True
                self._connection_errors = 0
                self.logger.info(f"Connected to InfluxDB successfully (attempt {attempt + 1})")
                return True

            except Exception as e:
                self.logger.warning(f"Connection attempt {attempt + 1} failed: {e}")
                self._connection_errors += 1
                if self._client:
                    self._client.close()
                    self._client = None

                if attempt < self.retry_attempts - 1:
                    delay = self.retry_delay * (self.retry_exponential_base ** attempt)
                    await asyncio.sleep(delay)
                else:
                    self._is_connected = False
                    raise ConnectionError(f"Failed to connect after {self.retry_attempts} attempts: {e}") from e

        return False

    async def disconnect(self):
        """Close the client. Buffered points must be flushed before."""
        if self._buffer:
            self.logger.warning(f"Disconnecting with {len(self._buffer)} unwritten points")

        if self._client:
            self._client.close()
            self._client = None
            self._write_api = None

        self._is_connected = False
        self.logger.info("Disconnected from InfluxDB")

    def _convert_result_to_points(self, result: Result) -> List[DataPoint]:
        """
        Convert a result to InfluxDB data points.

        Args:
            result: Result to convert

        Returns:
            List[DataPoint]: Measurement and firmware points, whichever the result carries
        """
        points = []
        tags = {"name": result.name, "address": result.address}
        timestamp = result.timestamp or datetime.now(timezone.utc)

        measurement = result.measurement
        if measurement is not None and not measurement.is_empty():
            fields = {}
            if measurement.temperature is not None:
                fields["temperature_celsius"] = measurement.temperature.value
            if measurement.moisture is not None:
                fields["moisture_percent"] = measurement.moisture
            if measurement.brightness is not None:
                fields["brightness_lux"] = measurement.brightness
            if measurement.conductivity is not None:
                fields["conductivity_sm"] = measurement.conductivity.value

            points.append(DataPoint(
                measurement="flowercare_measurement",
                tags=tags.copy(),
                fields=fields,
                timestamp=timestamp
            ))

        if result.firmware is not None:
            points.append(DataPoint(
                measurement="flowercare_firmware",
                tags=tags.copy(),
                fields={
                    "battery_percent": result.firmware.battery,
                    "version": result.firmware.version,
                },
                timestamp=timestamp
            ))

        return points

    def _convert_to_influx_points(self, data_points: List[DataPoint]) -> List[Point]:
        influx_points = []

        for dp in data_points:
            point = Point(dp.measurement)
            for tag_key, tag_value in dp.tags.items():
                point = point.tag(tag_key, str(tag_value))
            for field_key, field_value in dp.fields.items():
                point = point.field(field_key, field_value)
            if dp.timestamp:
                point = point.time(dp.timestamp, WritePrecision.S)
            influx_points.append(point)

        return influx_points

    async def write_result(self, result: Result) -> bool:
        """
        Buffer the points of one result, writing a batch once the buffer is full.

        Args:
            result: Result to write

        Returns:
            bool: True if the points were buffered or written
        """
        if not self._is_connected:
            self.logger.warning("Not connected to InfluxDB, cannot write data")
            return False

        self._buffer.extend(self._convert_result_to_points(result))
        if len(self._buffer) >= self.batch_size:
            return await self.flush_all()
        return True

    async def _write_points(self, data_points: List[DataPoint]) -> bool:
        """
        Write data points to InfluxDB with retry logic.

        Args:
            data_points: List of data points to write

        Returns:
            bool: True if write successful
        """
        if not data_points:
            return True

        influx_points = self._convert_to_influx_points(data_points)

        for attempt in range(self.retry_attempts):
            try:
                start_time = time.time()
                self._write_api.write(
                    bucket=self.bucket,
                    org=self.org,
                    record=influx_points
                )
                write_time = time.time() - start_time

                self._stats.points_written += len(data_points)
                self._stats.batches_sent += 1
                self._stats.last_write_time = datetime.now(timezone.utc)
                self._stats.total_write_time += write_time

                self.performance_monitor.record_metric("influxdb_points_written", len(data_points))
                self.performance_monitor.record_metric("influxdb_write_time", write_time)

                self.logger.debug(f"Wrote {len(data_points)} points to InfluxDB in {write_time:.3f}s")
                return True

            except (ClientError, ApiException) as e:
                self.logger.warning(f"Write attempt {attempt + 1} failed: {e}")

                if attempt < self.retry_attempts - 1:
                    delay = self.retry_delay * (self.retry_exponential_base ** attempt)
                    await asyncio.sleep(delay)
                else:
                    self._stats.points_failed += len(data_points)
                    self._stats.batches_failed += 1
                    self.performance_monitor.record_metric("influxdb_write_errors", 1)
                    self.logger.error(f"Failed to write points after {self.retry_attempts} attempts: {e}")
                    return False

        return False

    async def flush_all(self) -> bool:
        """
        Flush all buffered points to InfluxDB.

        Returns:
            bool: True if all data flushed successfully
        """
        total_points = len(self._buffer)
        if total_points == 0:
            return True

        success_count = 0
        while self._buffer:
            batch_size = min(len(self._buffer), self.batch_size)
            points_to_write = [self._buffer.popleft() for _ in range(batch_size)]

            if await self._write_points(points_to_write):
                success_count += len(points_to_write)
            else:
                # Re-add failed points at the front
                for point in reversed(points_to_write):
                    self._buffer.appendleft(point)
                break

        self.logger.debug(f"Flushed {success_count}/{total_points} points")
        return success_count == total_points

    def get_buffer_size(self) -> int:
        return len(self._buffer)

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get client statistics.

        Returns:
            Dict[str, Any]: Client statistics
        """
        return {
            "is_connected": self._is_connected,
            "buffer_size": len(self._buffer),
            "points_written": self._stats.points_written,
            "points_failed": self._stats.points_failed,
            "batches_sent": self._stats.batches_sent,
            "batches_failed": self._stats.batches_failed,
            "last_write_time": self._stats.last_write_time,
            "total_write_time": self._stats.total_write_time,
            "average_write_time": (
                self._stats.total_write_time / self._stats.batches_sent
                if self._stats.batches_sent > 0 else 0
            ),
            "connection_errors": self._connection_errors,
        }

    def is_connected(self) -> bool:
        return self._is_connected


class InfluxDBSink(ResultSink):
    """Result sink storing results through FlowerCareInfluxDBClient."""

    def __init__(self, client: FlowerCareInfluxDBClient, logger: ProductionLogger, buffer_size: int = 1):
        super().__init__(logger, buffer_size)
        self.client = client

    async def open(self):
        if not self.client.is_connected():
            await self.client.connect()

    async def write(self, result: Result):
        if not await self.client.write_result(result):
            raise WriteError(f"Writing result for {result.address} to InfluxDB failed")

    async def flush(self):
        if not await self.client.flush_all():
            raise WriteError(
                f"Flushing to InfluxDB failed, {self.client.get_buffer_size()} points not written"
            )

    async def close(self):
        try:
            await super().close()
        finally:
            stats = self.client.get_statistics()
            self.logger.info(
                f"InfluxDB output: {stats['points_written']} points in {stats['batches_sent']} batches, "
                f"{stats['points_failed']} points failed, {stats['buffer_size']} left in buffer"
            )
            await self.client.disconnect()
