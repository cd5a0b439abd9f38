from __future__ import annotations

import io
import logging
import sys
from typing import Any, TextIO

import structlog
from structlog.typing import FilteringBoundLogger


class _TeeStream:
    def __init__(self, *streams: TextIO) -> None:
        self._streams = streams

    def write(self, text: str) -> int:
        for stream in self._streams:
            stream.write(text)
        return len(text)

    def flush(self) -> None:
        for stream in self._streams:
            stream.flush()


class RunLog:
    """Logging context of a single backup run.

    Every line is printed to ``stream`` (stdout by default) and also kept in memory
    so the whole run can be attached to the final notification.
    """

    def __init__(self, stream: TextIO | None = None, *, level: int = logging.INFO) -> None:
        self._buffer = io.StringIO()
        sink = _TeeStream(stream if stream is not None else sys.stdout, self._buffer)
        self.logger: FilteringBoundLogger = structlog.wrap_logger(
            structlog.PrintLogger(file=sink),
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.dev.ConsoleRenderer(colors=False),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            context_class=dict,
            cache_logger_on_first_use=False,
        )

    def bind(self, **values: Any) -> FilteringBoundLogger:
        return self.logger.bind(**values)

    def text(self) -> str:
        return self._buffer.getvalue()
