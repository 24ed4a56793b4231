"""
Result records and the sink boundary the sensor code writes them to.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Optional, TypeVar, Union

from ..ble.frames import Firmware, Measurement
from ..utils.logging import ProductionLogger


T = TypeVar("T")


class SinkError(Exception):
    """Raised when a sink can no longer accept results."""
    pass


@dataclass
class Result:
    """One record delivered to a sink."""
    name: str
    address: str
    timestamp: Optional[datetime] = None
    firmware: Optional[Firmware] = None
    measurement: Optional[Measurement] = None
    # Log position of a history entry, None for live readings
    position: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form with absent parts left out."""
        data = {"name": self.name, "address": self.address}
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp.isoformat()
        if self.firmware is not None:
            data["firmware"] = self.firmware.to_dict()
        if self.measurement is not None:
            data["measurement"] = self.measurement.to_dict()
        return data


class ResultSink:
    """
    Base class for result sinks.

    Results are handed over through a bounded queue and written by a single
    background task. The first write error is terminal: it is kept, later
    ``send`` calls raise it and ``close`` re-raises it.

    A history result counts as confirmed once it is written and flushed;
    ``confirmed`` maps each address to its last confirmed log position.
    Sinks that write through on every ``write`` set ``buffered`` to False.
    """

    buffered = True

    def __init__(self, logger: ProductionLogger, buffer_size: int = 1):
        self.logger = logger
        self._queue: "asyncio.Queue[Union[Result, asyncio.Future, None]]" = asyncio.Queue(maxsize=max(1, buffer_size))
        self._task: Optional[asyncio.Task] = None
        self._unconfirmed: List[Result] = []
        self.confirmed: Dict[str, int] = {}
        self.error: Optional[BaseException] = None
        self.failed = asyncio.Event()
        self.written = 0

    async def open(self):
        """Prepare the sink before the first write."""
        pass

    async def write(self, result: Result):
        """Persist one result."""
        raise NotImplementedError

    async def flush(self):
        """Persist anything still buffered."""
        pass

    async def start(self):
        await self.open()
        self._task = asyncio.create_task(self._run())

    def _raise_if_failed(self):
        if self.error is not None:
            raise SinkError(f"Sink failed: {self.error}") from self.error

    async def send(self, result: Result):
        """
        Queue a result, waiting while the buffer is full.

        Raises:
            SinkError: If the sink has already failed
        """
        self._raise_if_failed()
        await self._queue.put(result)

    async def checkpoint(self):
        """
        Wait until every result sent so far is written and flushed.

        Raises:
            SinkError: If the sink failed before the checkpoint was reached
        """
        self._raise_if_failed()
        marker = asyncio.get_running_loop().create_future()
        await self._queue.put(marker)
        failed = asyncio.ensure_future(self.failed.wait())
        try:
            await asyncio.wait({marker, failed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            failed.cancel()
            if not marker.done():
                marker.cancel()
        if marker.cancelled():
            self._raise_if_failed()
            raise SinkError("Sink stopped before the checkpoint was reached")

    def _confirm(self):
        for result in self._unconfirmed:
            if result.position is not None:
                self.confirmed[result.address] = result.position
        self._unconfirmed.clear()

    async def _run(self):
        while True:
            item = await self._queue.get()
            if item is None:
                return
            try:
                if isinstance(item, asyncio.Future):
                    await self.flush()
                    self._confirm()
                    if not item.done():
                        item.set_result(None)
                    continue

                await self.write(item)
                self.written += 1
                self._unconfirmed.append(item)
                if not self.buffered:
                    self._confirm()
            except Exception as e:
                address = getattr(item, "address", None)
                target = f" for {address}" if address else ""
                self.logger.error(f"{type(self).__name__} failed to write result{target}: {e}")
                self.error = e
                self.failed.set()
                return

    async def close(self):
        """
        Drain the queue, flush and stop the writer task.

        Raises:
            SinkError: If any write failed
        """
        if self._task is not None:
            # The writer may stop on an error while the queue is full
            stop = asyncio.ensure_future(self._queue.put(None))
            try:
                await asyncio.wait({stop, self._task}, return_when=asyncio.FIRST_COMPLETED)
                await self._task
            finally:
                stop.cancel()
            self._task = None

        if self.error is None:
            try:
                await self.flush()
                self._confirm()
            except Exception as e:
                self.error = e

        self._raise_if_failed()


async def run_with_sink(sink: ResultSink, operation: Awaitable[T]) -> T:
    """
    Run ``operation`` while ``sink`` is accepting its results.

    A sink failure cancels the operation and surfaces as SinkError.
    """
    await sink.start()
    op_task = asyncio.ensure_future(operation)
    fail_task = asyncio.create_task(sink.failed.wait())
    try:
        await asyncio.wait({op_task, fail_task}, return_when=asyncio.FIRST_COMPLETED)
        if not op_task.done():
            op_task.cancel()
            await asyncio.gather(op_task, return_exceptions=True)
            raise SinkError(f"Sink failed: {sink.error}") from sink.error
        value = op_task.result()
    finally:
        fail_task.cancel()
        if not op_task.done():
            op_task.cancel()
            await asyncio.gather(op_task, return_exceptions=True)
        try:
            await sink.close()
        except SinkError:
            # Only raise the sink error if nothing else is propagating
            if op_task.done() and not op_task.cancelled() and op_task.exception() is None:
                raise
    return value
