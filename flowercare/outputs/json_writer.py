"""
Sink writing results as JSON lines.
"""

import json
import sys
from typing import Optional, TextIO

from .sink import Result, ResultSink
from ..utils.logging import ProductionLogger


class JSONLinesSink(ResultSink):
    """Writes one JSON object per result, to stdout unless another stream is given."""

    buffered = False

    def __init__(self, logger: ProductionLogger, stream: Optional[TextIO] = None, buffer_size: int = 1):
        super().__init__(logger, buffer_size)
        self.stream = stream if stream is not None else sys.stdout

    async def write(self, result: Result):
        self.stream.write(json.dumps(result.to_dict()) + "\n")
        self.stream.flush()

    async def flush(self):
        self.stream.flush()
