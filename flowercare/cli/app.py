"""
Command line interface for the Flower Care Sensor Service.
Provides scan, realtime and history commands using click and rich.
"""

import asyncio
import sys
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from ..ble.device import DeviceSession
from ..ble.frames import Firmware, FrameError
from ..ble.history import HistorySynchronizer
from ..ble.realtime import RealtimeReader
from ..ble.scanner import discover
from ..ble.sensors import Sensor, SensorSet
from ..ble.transport import BleakTransport, DeviceError
from ..influxdb.client import FlowerCareInfluxDBClient, InfluxDBError, InfluxDBSink
from ..metadata.manager import MetadataError, MetadataManager
from ..outputs.json_writer import JSONLinesSink
from ..outputs.sink import ResultSink, SinkError, run_with_sink
from ..utils.config import Config, ConfigurationError, ScanSettings, parse_sensor_names
from ..utils.logging import PerformanceMonitor, ProductionLogger, setup_logging


__version__ = "1.0.0"


class CLIError(Exception):
    """Base exception for CLI operations."""
    pass


class FlowerCareCLI:
    """
    CLI application for the Flower Care Sensor Service.

    Features:
    - Sensor discovery with a summary table
    - Realtime and history reads to JSON lines or InfluxDB
    - Resumable history sync using stored cursors
    """

    def __init__(self, adapter: Optional[str] = None, env_file: Optional[str] = None):
        # Status output goes to stderr so stdout can carry JSON lines
        self.console = Console(stderr=True)
        self.out = Console()
        self.adapter_override = adapter
        self.env_file = env_file
        self.config: Optional[Config] = None
        self.logger: Optional[ProductionLogger] = None
        self.performance_monitor: Optional[PerformanceMonitor] = None
        self.metadata_manager: Optional[MetadataManager] = None
        self.transport: Optional[BleakTransport] = None

    def _initialize_components(self, require_influxdb: Optional[bool] = False):
        """Initialize all components with error handling."""
        try:
            self.config = Config(self.env_file)
            if require_influxdb is None:
                require_influxdb = self.config.output == "influxdb"
            self.config.validate_configuration(require_influxdb=require_influxdb)

            self.logger = setup_logging(self.config)
            self.performance_monitor = PerformanceMonitor()
            self.metadata_manager = MetadataManager(self.config, self.logger)
            self.transport = BleakTransport(
                self.logger,
                adapter=self.adapter_override or self.config.ble_adapter,
                connect_timeout=self.config.ble_connect_timeout
            )

            self.logger.debug(f"Configuration: {self.config.get_summary()}")
            self.logger.info("CLI components initialized successfully")

        except ConfigurationError as e:
            raise CLIError(f"Configuration error: {e}") from e
        except (MetadataError, OSError) as e:
            raise CLIError(f"Initialization error: {e}") from e

    def _settings(self, scan_timeout: Optional[float], expected_sensors: Optional[int],
                  sensor_names: Tuple[str, ...]) -> ScanSettings:
        try:
            names = parse_sensor_names(sensor_names) if sensor_names else None
            return self.config.scan_settings(
                scan_timeout=scan_timeout,
                expected_sensors=expected_sensors,
                sensor_names=names,
            )
        except ConfigurationError as e:
            raise CLIError(str(e)) from e

    def _create_sink(self, output: str) -> ResultSink:
        buffer_size = self.config.output_buffer_size
        if output == "influxdb":
            client = FlowerCareInfluxDBClient(self.config, self.logger, self.performance_monitor)
            return InfluxDBSink(client, self.logger, buffer_size=buffer_size)
        return JSONLinesSink(self.logger, buffer_size=buffer_size)

    async def _discover(self, settings: ScanSettings) -> SensorSet:
        with self.console.status(f"Scanning for Flower Care sensors ({settings.scan_timeout}s)..."):
            sensors = await discover(self.transport, settings, self.logger, self.performance_monitor)

        if len(sensors) == 0:
            self.console.print("[yellow]No Flower Care sensors found[/yellow]")
        return sensors

    def _print_sensor_table(self, sensors: SensorSet):
        table = Table(title="Discovered Sensors", show_header=True, header_style="bold green")
        table.add_column("Address", style="cyan")
        table.add_column("Name", style="green")
        table.add_column("RSSI", style="yellow")
        table.add_column("Temperature", style="red")
        table.add_column("Moisture", style="blue")
        table.add_column("Brightness", style="magenta")
        table.add_column("Conductivity", style="dim")

        for sensor in sensors:
            m = sensor.measurement
            table.add_row(
                sensor.address,
                sensor.name or "-",
                f"{sensor.rssi} dBm" if sensor.rssi is not None else "N/A",
                f"{m.temperature}°C" if m and m.temperature is not None else "-",
                f"{m.moisture}%" if m and m.moisture is not None else "-",
                f"{m.brightness} lx" if m and m.brightness is not None else "-",
                f"{m.conductivity} S/m" if m and m.conductivity is not None else "-",
            )

        self.out.print(table)

    def _print_metadata_table(self):
        sensors = self.metadata_manager.get_all_sensors()
        if not sensors:
            self.console.print("[yellow]No sensors recorded yet[/yellow]")
            return

        table = Table(title="Known Sensors", show_header=True, header_style="bold magenta")
        table.add_column("Address", style="cyan")
        table.add_column("Name", style="green")
        table.add_column("Firmware", style="blue")
        table.add_column("Battery", style="yellow")
        table.add_column("History", style="magenta")
        table.add_column("Last Seen", style="dim")

        for address, sensor in sensors.items():
            if sensor.history_pointer is None:
                history = "not started"
            elif sensor.history_pointer == 0:
                history = "complete"
            else:
                history = f"at {sensor.history_pointer}"
            table.add_row(
                address,
                sensor.name or "-",
                sensor.firmware_version or "-",
                f"{sensor.battery_level}%" if sensor.battery_level is not None else "-",
                history,
                sensor.last_seen.strftime("%Y-%m-%d %H:%M") if sensor.last_seen else "Never",
            )

        self.out.print(table)

    async def scan(self, settings: ScanSettings):
        sensors = await self._discover(settings)
        if len(sensors):
            self.metadata_manager.record_sensors(sensors)
            self._print_sensor_table(sensors)

    async def realtime(self, settings: ScanSettings, output: str):
        sensors = await self._discover(settings)
        if not len(sensors):
            return

        def on_firmware(sensor: Sensor, firmware: Firmware):
            self.metadata_manager.record_firmware(sensor.address, firmware, save=False)

        sink = self._create_sink(output)
        reader = RealtimeReader(
            self.transport, settings, sink, self.logger, self.performance_monitor, on_firmware=on_firmware
        )
        try:
            count = await run_with_sink(sink, reader.run(sensors))
        finally:
            self.metadata_manager.record_sensors(sensors)
        self.console.print(f"[green]Read {count} of {len(sensors)} sensors[/green]")

    def _record_progress(self, sensor: Sensor):
        self.metadata_manager.record_cursor(sensor.address, sensor.history_pointer)

    async def history(self, settings: ScanSettings, output: str):
        sensors = await self._discover(settings)
        if not len(sensors):
            return

        self.metadata_manager.apply_cursors(sensors)

        sink = self._create_sink(output)
        synchronizer = HistorySynchronizer(
            self.transport, settings, sink, self.logger, self.performance_monitor,
            on_progress=self._record_progress
        )
        try:
            await run_with_sink(sink, synchronizer.run(sensors))
        finally:
            # Only positions the sink has persisted become stored cursors
            self.metadata_manager.record_cursors(sink.confirmed)
            self.metadata_manager.record_sensors(sensors)

        summary = self.performance_monitor.get_performance_summary()
        self.console.print(
            f"[green]Synchronized {summary['sync_passes']['entries_synchronized']} history entries "
            f"in {summary['sync_passes']['total']} passes[/green]"
        )
        unfinished = [s.address for s in sensors if not s.finished]
        if unfinished:
            self.console.print(f"[yellow]History incomplete for: {', '.join(unfinished)}[/yellow]")

    async def blink(self, address: str):
        async with DeviceSession(self.transport, address.upper(), self.logger) as device:
            await device.blink()
        self.console.print(f"[green]Sent blink command to {address}[/green]")

    def run(self, coro_factory, require_influxdb: Optional[bool] = False):
        """
        Initialize components and run a command coroutine.

        Cancellation and Ctrl+C end the command normally. With ``require_influxdb``
        None the InfluxDB settings are checked only if OUTPUT selects InfluxDB.
        """
        try:
            self._initialize_components(require_influxdb=require_influxdb)
            asyncio.run(coro_factory())
        except (KeyboardInterrupt, asyncio.CancelledError):
            self.console.print("\n[yellow]Interrupted[/yellow]")
        except CLIError as e:
            self.console.print(f"[red]{e}[/red]")
            sys.exit(1)
        except ConfigurationError as e:
            self.console.print(f"[red]Configuration error: {e}[/red]")
            sys.exit(1)
        except SinkError as e:
            self.console.print(f"[red]Output failed: {e}[/red]")
            sys.exit(1)
        except (DeviceError, FrameError) as e:
            self.console.print(f"[red]Sensor error: {e}[/red]")
            sys.exit(1)
        except (InfluxDBError, MetadataError) as e:
            self.console.print(f"[red]{type(e).__name__}: {e}[/red]")
            sys.exit(1)


def scan_options(func):
    """Options shared by all commands that run a discovery."""
    func = click.option("--sensor-name", "sensor_names", multiple=True, metavar="ADDRESS=NAME",
                        help="Only use this sensor and give it a name (repeatable)")(func)
    func = click.option("--expected-sensors", type=click.IntRange(min=0), default=None,
                        help="Stop scanning once this many sensors are found")(func)
    func = click.option("--scan-timeout", type=click.FloatRange(min=0, min_open=True), default=None,
                        help="Scan duration in seconds")(func)
    return func


def output_option(func):
    return click.option("--output", "-o", type=click.Choice(["json", "influxdb"]), default=None,
                        help="Where to send results (default from OUTPUT, json)")(func)


@click.group()
@click.version_option(version=__version__, prog_name="flowercare")
@click.option("--adapter", default=None, help="Bluetooth adapter to use, e.g. hci0")
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="Configuration file")
@click.pass_context
def cli(ctx, adapter, env_file):
    """Flower Care Sensor Service - read plant sensors over Bluetooth LE."""
    ctx.obj = FlowerCareCLI(adapter=adapter, env_file=env_file)


@cli.command()
@scan_options
@click.pass_obj
def scan(app: FlowerCareCLI, scan_timeout, expected_sensors, sensor_names):
    """Discover sensors and show their advertised values."""
    app.run(lambda: app.scan(app._settings(scan_timeout, expected_sensors, sensor_names)))


@cli.command()
@scan_options
@output_option
@click.pass_obj
def realtime(app: FlowerCareCLI, scan_timeout, expected_sensors, sensor_names, output):
    """Read current values from all discovered sensors."""
    app.run(
        lambda: app.realtime(app._settings(scan_timeout, expected_sensors, sensor_names),
                             output or app.config.output),
        require_influxdb=output == "influxdb" if output else None
    )


@cli.command()
@scan_options
@output_option
@click.pass_obj
def history(app: FlowerCareCLI, scan_timeout, expected_sensors, sensor_names, output):
    """Synchronize the stored measurement history of all discovered sensors."""
    app.run(
        lambda: app.history(app._settings(scan_timeout, expected_sensors, sensor_names),
                            output or app.config.output),
        require_influxdb=output == "influxdb" if output else None
    )


@cli.command()
@click.argument("address")
@click.pass_obj
def blink(app: FlowerCareCLI, address):
    """Make the LED of one sensor blink."""
    app.run(lambda: app.blink(address))


@cli.command()
@click.pass_obj
def sensors(app: FlowerCareCLI):
    """Show sensors recorded in the metadata file."""
    async def show():
        app._print_metadata_table()

    app.run(show)


@cli.command("reset-history")
@click.argument("address")
@click.pass_obj
def reset_history(app: FlowerCareCLI, address):
    """Forget the history cursor of a sensor."""
    async def reset():
        if app.metadata_manager.reset_history(address):
            app.console.print(f"[green]History cursor of {address} removed[/green]")
        else:
            app.console.print(f"[yellow]No history cursor stored for {address}[/yellow]")

    app.run(reset)


if __name__ == "__main__":
    cli()
