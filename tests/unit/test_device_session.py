"""
Unit tests for the connected device session.
Tests command bytes, missing attributes and cleanup on error paths.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, Mock

from flowercare.ble.device import DeviceSession, history_address_command
from flowercare.ble.transport import ProtocolError, TransportError
from tests.mocks.mock_transport import MockFlowerCare, MockTransport

ADDRESS = "C4:7C:8D:00:00:01"


def make_transport(**device_options):
    device = MockFlowerCare(address=ADDRESS, **device_options)
    return MockTransport(devices={ADDRESS: device}), device


class TestCommands:
    """Test the bytes written before each read."""

    def test_history_address_command(self):
        assert history_address_command(0) == bytes([0xA1, 0x00, 0x00])
        assert history_address_command(0x0102) == bytes([0xA1, 0x02, 0x01])

    @pytest.mark.asyncio
    async def test_read_measurement_selects_realtime_mode(self, mock_logger, sample_measurement):
        transport, _ = make_transport()

        async with DeviceSession(transport, ADDRESS, mock_logger) as device:
            measurement = await device.read_measurement()
            connection = device.connection

        assert measurement == sample_measurement
        assert connection.writes == [("mode_change", bytes([0xA0, 0x1F]))]

    @pytest.mark.asyncio
    async def test_read_history(self, mock_logger):
        transport, _ = make_transport(history=[100, 200, 300])

        async with DeviceSession(transport, ADDRESS, mock_logger) as device:
            length = await device.read_history_length()
            entry = await device.read_history_entry(2)
            connection = device.connection

        assert length == 3
        assert entry.device_time == 300
        assert connection.writes == [
            ("history_control", bytes([0xA0, 0x00, 0x00])),
            ("history_control", bytes([0xA1, 0x02, 0x00])),
        ]

    @pytest.mark.asyncio
    async def test_read_firmware_and_time(self, mock_logger):
        transport, _ = make_transport(battery=42, version="3.1.9", device_time=5000)

        async with DeviceSession(transport, ADDRESS, mock_logger) as device:
            firmware = await device.read_firmware()
            device_time = await device.read_device_time()

        assert firmware.battery == 42
        assert firmware.version == "3.1.9"
        assert device_time == 5000

    @pytest.mark.asyncio
    async def test_time_diff(self, mock_logger, monkeypatch):
        transport, _ = make_transport(device_time=1000)
        clock = Mock(time=Mock(side_effect=[2000.0, 2002.0]))
        monkeypatch.setattr("flowercare.ble.device.time", clock)

        async with DeviceSession(transport, ADDRESS, mock_logger) as device:
            assert await device.read_time_diff() == 1001.0


class TestSessionLifecycle:
    """Test connection setup and cleanup."""

    @pytest.mark.asyncio
    async def test_subscribes_to_live_data(self, mock_logger):
        transport, _ = make_transport()

        async with DeviceSession(transport, ADDRESS, mock_logger):
            pass

        assert [a.name for a in transport.connections[0].subscriptions] == ["live_data"]
        assert transport.connections[0].closed
        assert not transport.lock.locked()

    @pytest.mark.asyncio
    async def test_subscription_failure_is_not_fatal(self, mock_logger):
        transport, _ = make_transport()
        original_dial = transport.dial

        async def dial(address):
            connection = await original_dial(address)
            connection.subscribe = AsyncMock(side_effect=TransportError("notify failed"))
            return connection

        transport.dial = dial

        async with DeviceSession(transport, ADDRESS, mock_logger) as device:
            firmware = await device.read_firmware()

        assert firmware.battery == 99

    @pytest.mark.asyncio
    async def test_missing_attribute(self, mock_logger):
        transport, _ = make_transport(missing={"history_data"})

        async with DeviceSession(transport, ADDRESS, mock_logger) as device:
            with pytest.raises(ProtocolError):
                await device.read_history_length()
            # Other attributes still work
            assert (await device.read_firmware()).battery == 99

    @pytest.mark.asyncio
    async def test_connect_failure_releases_lock(self, mock_logger):
        transport, _ = make_transport(fail_connect=1)

        with pytest.raises(TransportError):
            async with DeviceSession(transport, ADDRESS, mock_logger):
                pass

        assert not transport.lock.locked()

    @pytest.mark.asyncio
    async def test_disconnect_on_error(self, mock_logger):
        transport, _ = make_transport(missing={"device_time"})

        with pytest.raises(ProtocolError):
            async with DeviceSession(transport, ADDRESS, mock_logger) as device:
                await device.read_device_time()

        assert transport.connections[0].closed
        assert transport.open_connections == 0
        assert not transport.lock.locked()

    @pytest.mark.asyncio
    async def test_disconnect_failure_does_not_override_result(self, mock_logger):
        transport, _ = make_transport(fail_close=True)

        async with DeviceSession(transport, ADDRESS, mock_logger) as device:
            firmware = await device.read_firmware()

        assert firmware.version == "3.2.1"
        mock_logger.warning.assert_called_once()
        assert not transport.lock.locked()

    @pytest.mark.asyncio
    async def test_disconnect_failure_keeps_original_error(self, mock_logger):
        transport, _ = make_transport(fail_close=True, missing={"device_time"})

        with pytest.raises(ProtocolError):
            async with DeviceSession(transport, ADDRESS, mock_logger) as device:
                await device.read_device_time()

    @pytest.mark.asyncio
    async def test_sessions_are_serialized(self, mock_logger):
        transport, _ = make_transport()

        async def read():
            async with DeviceSession(transport, ADDRESS, mock_logger) as device:
                await asyncio.sleep(0.01)
                return await device.read_firmware()

        await asyncio.gather(read(), read(), read())
        assert transport.max_open_connections == 1
