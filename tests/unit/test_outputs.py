"""
Unit tests for result sinks.
Tests JSON lines output, InfluxDB point conversion and fail-fast sink errors.
"""

import asyncio
import io
import json
import pytest
from datetime import datetime, timezone
from unittest.mock import Mock, patch

from influxdb_client.rest import ApiException

from flowercare.ble.frames import Conductivity, Firmware, Measurement, Temperature
from flowercare.influxdb.client import FlowerCareInfluxDBClient, InfluxDBSink
from flowercare.outputs.json_writer import JSONLinesSink
from flowercare.outputs.sink import Result, SinkError, run_with_sink
from tests.mocks.mock_transport import RecordingSink


TIMESTAMP = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_result(**overrides) -> Result:
    values = dict(
        name="basil",
        address="C4:7C:8D:00:00:01",
        timestamp=TIMESTAMP,
        firmware=Firmware(version="3.2.1", battery=99),
        measurement=Measurement(
            temperature=Temperature(-25),
            moisture=13,
            brightness=250,
            conductivity=Conductivity(46),
        ),
    )
    values.update(overrides)
    return Result(**values)


class TestResult:
    """Test the serializable form of results."""

    def test_to_dict(self):
        assert make_result().to_dict() == {
            "name": "basil",
            "address": "C4:7C:8D:00:00:01",
            "timestamp": "2024-05-01T12:00:00+00:00",
            "firmware": {"version": "3.2.1", "battery": 99},
            "measurement": {"temperature": -2.5, "moisture": 13, "brightness": 250, "conductivity": 0.0046},
        }

    def test_to_dict_omits_absent_parts(self):
        result = make_result(timestamp=None, firmware=None, measurement=Measurement(moisture=0))
        assert result.to_dict() == {
            "name": "basil",
            "address": "C4:7C:8D:00:00:01",
            "measurement": {"moisture": 0},
        }


class TestJSONLinesSink:
    """Test JSON lines output."""

    @pytest.mark.asyncio
    async def test_writes_one_line_per_result(self, mock_logger):
        stream = io.StringIO()
        sink = JSONLinesSink(mock_logger, stream=stream)

        await sink.start()
        await sink.send(make_result())
        await sink.send(make_result(name="mint"))
        await sink.close()

        lines = stream.getvalue().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])["measurement"]["conductivity"] == 0.0046
        assert json.loads(lines[1])["name"] == "mint"
        assert sink.written == 2


class TestResultSink:
    """Test terminal errors and fail-fast behaviour."""

    @pytest.mark.asyncio
    async def test_write_error_is_reported_on_close(self, mock_logger):
        sink = RecordingSink(mock_logger, fail_after=1)
        await sink.start()
        await sink.send(make_result())
        await sink.send(make_result())

        with pytest.raises(SinkError):
            await sink.close()
        assert len(sink.results) == 1
        mock_logger.error.assert_called_once()

    @pytest.mark.asyncio
    async def test_send_after_failure_raises(self, mock_logger):
        sink = RecordingSink(mock_logger, fail_after=0)
        await sink.start()
        await sink.send(make_result())
        await sink.failed.wait()

        with pytest.raises(SinkError):
            await sink.send(make_result())
        with pytest.raises(SinkError):
            await sink.close()

    @pytest.mark.asyncio
    async def test_run_with_sink_returns_operation_result(self, mock_logger):
        sink = RecordingSink(mock_logger)

        async def operation():
            for i in range(3):
                await sink.send(make_result(name=f"plant-{i}"))
            return 3

        assert await run_with_sink(sink, operation()) == 3
        assert [r.name for r in sink.results] == ["plant-0", "plant-1", "plant-2"]

    @pytest.mark.asyncio
    async def test_sink_failure_cancels_operation(self, mock_logger):
        sink = RecordingSink(mock_logger, fail_after=1)
        cancelled = asyncio.Event()

        async def operation():
            try:
                while True:
                    await sink.send(make_result())
                    await asyncio.sleep(0.01)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(SinkError):
            await asyncio.wait_for(run_with_sink(sink, operation()), timeout=2)
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_operation_error_wins_over_sink_error(self, mock_logger):
        sink = RecordingSink(mock_logger)

        async def operation():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await run_with_sink(sink, operation())


class TestConfirmedPositions:
    """Test which history positions count as persisted."""

    @pytest.mark.asyncio
    async def test_buffered_results_are_confirmed_at_checkpoint(self, mock_logger):
        sink = RecordingSink(mock_logger)
        await sink.start()
        await sink.send(make_result(position=9))
        await sink.send(make_result(position=8))
        await sink.send(make_result(name="live"))

        assert sink.confirmed == {}
        await sink.checkpoint()
        assert sink.confirmed == {"C4:7C:8D:00:00:01": 8}
        assert sink.flushes == 1
        await sink.close()

    @pytest.mark.asyncio
    async def test_failed_flush_confirms_nothing(self, mock_logger):
        sink = RecordingSink(mock_logger, fail_flush=True)
        await sink.start()
        await sink.send(make_result(position=9))
        await sink.send(make_result(position=8))

        with pytest.raises(SinkError):
            await asyncio.wait_for(sink.checkpoint(), timeout=2)
        assert len(sink.results) == 2
        assert sink.confirmed == {}
        with pytest.raises(SinkError):
            await sink.close()
        assert sink.confirmed == {}

    @pytest.mark.asyncio
    async def test_failed_write_confirms_nothing(self, mock_logger):
        sink = RecordingSink(mock_logger, fail_after=2)
        await sink.start()
        for position in (9, 8, 7):
            await sink.send(make_result(position=position))

        with pytest.raises(SinkError):
            await asyncio.wait_for(sink.checkpoint(), timeout=2)
        assert [r.position for r in sink.results] == [9, 8]
        assert sink.confirmed == {}

    @pytest.mark.asyncio
    async def test_close_confirms_pending_results(self, mock_logger):
        sink = RecordingSink(mock_logger)
        await sink.start()
        await sink.send(make_result(position=3))
        await sink.send(make_result(address="C4:7C:8D:00:00:02", position=0))
        await sink.close()

        assert sink.confirmed == {"C4:7C:8D:00:00:01": 3, "C4:7C:8D:00:00:02": 0}

    @pytest.mark.asyncio
    async def test_json_lines_confirm_each_write(self, mock_logger):
        stream = io.StringIO()
        sink = JSONLinesSink(mock_logger, stream=stream)
        await sink.start()
        await sink.send(make_result(position=5))
        await sink.send(make_result(position=4))

        await asyncio.sleep(0.05)
        assert sink.confirmed == {"C4:7C:8D:00:00:01": 4}
        await sink.close()
        assert sink.confirmed == {"C4:7C:8D:00:00:01": 4}
        assert "position" not in json.loads(stream.getvalue().splitlines()[0])


class TestInfluxDBOutput:
    """Test conversion of results into InfluxDB points."""

    def setup_method(self):
        self.mock_logger = Mock()
        self.mock_performance_monitor = Mock()

    def _client(self, mock_config):
        return FlowerCareInfluxDBClient(mock_config, self.mock_logger, self.mock_performance_monitor)

    def test_convert_result_to_points(self, mock_config):
        points = self._client(mock_config)._convert_result_to_points(make_result())

        measurement, firmware = points
        assert measurement.measurement == "flowercare_measurement"
        assert measurement.tags == {"name": "basil", "address": "C4:7C:8D:00:00:01"}
        assert measurement.fields == {
            "temperature_celsius": -2.5,
            "moisture_percent": 13,
            "brightness_lux": 250,
            "conductivity_sm": 0.0046,
        }
        assert measurement.timestamp == TIMESTAMP

        assert firmware.measurement == "flowercare_firmware"
        assert firmware.fields == {"battery_percent": 99, "version": "3.2.1"}

    def test_history_result_has_only_measurement(self, mock_config):
        points = self._client(mock_config)._convert_result_to_points(make_result(firmware=None))
        assert [p.measurement for p in points] == ["flowercare_measurement"]

    def test_line_protocol(self, mock_config):
        client = self._client(mock_config)
        points = client._convert_to_influx_points(client._convert_result_to_points(make_result(firmware=None)))

        line = points[0].to_line_protocol()
        assert line.startswith("flowercare_measurement,address=C4:7C:8D:00:00:01,name=basil ")
        assert "moisture_percent=13i" in line
        assert "temperature_celsius=-2.5" in line

    @pytest.mark.asyncio
    async def test_sink_writes_batches(self, mock_config):
        with patch('flowercare.influxdb.client.InfluxDBClient') as client_class:
            write_api = client_class.return_value.write_api.return_value
            client_class.return_value.ping.return_value = True

            client = self._client(mock_config)
            sink = InfluxDBSink(client, self.mock_logger)

            await sink.start()
            for _ in range(3):
                await sink.send(make_result(firmware=None))
            await sink.close()

        # batch size 2: one batch while writing, the rest on close
        assert write_api.write.call_count == 2
        assert client.get_statistics()["points_written"] == 3
        client_class.return_value.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_sink_fails_when_connection_fails(self, mock_config):
        with patch('flowercare.influxdb.client.InfluxDBClient') as client_class:
            client_class.return_value.ping.return_value = False

            sink = InfluxDBSink(self._client(mock_config), self.mock_logger)
            with pytest.raises(Exception, match="Failed to connect"):
                await sink.start()

    @pytest.mark.asyncio
    async def test_close_logs_write_statistics(self, mock_config):
        with patch('flowercare.influxdb.client.InfluxDBClient') as client_class:
            client_class.return_value.ping.return_value = True

            sink = InfluxDBSink(self._client(mock_config), self.mock_logger)
            await sink.start()
            for position in (2, 1, 0):
                await sink.send(make_result(firmware=None, position=position))
            await sink.close()

        messages = [str(c) for c in self.mock_logger.info.call_args_list]
        assert any("3 points in 2 batches, 0 points failed, 0 left in buffer" in m for m in messages)
        assert sink.confirmed == {"C4:7C:8D:00:00:01": 0}

    @pytest.mark.asyncio
    async def test_close_logs_statistics_after_failed_batch(self, mock_config):
        with patch('flowercare.influxdb.client.InfluxDBClient') as client_class:
            client_class.return_value.ping.return_value = True
            client_class.return_value.write_api.return_value.write.side_effect = ApiException(status=503)

            sink = InfluxDBSink(self._client(mock_config), self.mock_logger)
            await sink.start()
            for position in (1, 0):
                await sink.send(make_result(firmware=None, position=position))
            with pytest.raises(SinkError):
                await sink.close()

        messages = [str(c) for c in self.mock_logger.info.call_args_list]
        assert any("0 points in 0 batches, 2 points failed, 2 left in buffer" in m for m in messages)
        assert sink.confirmed == {}
        client_class.return_value.close.assert_called_once()
