"""Status line sinks.

A sink receives the human-readable lines a log window would show: lines
relayed in each direction plus session status messages. Sinks are injected
into the server and relays; they must return quickly and never raise into
the caller, which :func:`emit` enforces.
"""

from collections import deque
from typing import Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


@runtime_checkable
class LogSink(Protocol):
    """Receiver of formatted status lines."""

    def log_line(self, text: str) -> None: ...


class StructlogSink:
    """Default sink forwarding every line to structlog."""

    def __init__(self, event: str = "gateway_line") -> None:
        self.event = event
        self._logger = structlog.get_logger("bpqgate.sink")

    def log_line(self, text: str) -> None:
        self._logger.info(self.event, line=text)


class MemorySink:
    """Bounded in-memory line buffer, oldest lines dropped first."""

    def __init__(self, max_lines: int = 1000) -> None:
        self._lines: deque[str] = deque(maxlen=max_lines)

    def log_line(self, text: str) -> None:
        self._lines.append(text)

    @property
    def lines(self) -> list[str]:
        """Snapshot of the buffered lines."""
        return list(self._lines)

    def clear(self) -> None:
        self._lines.clear()

    def __len__(self) -> int:
        return len(self._lines)


def emit(sink: LogSink | None, text: str) -> None:
    """
    Hand a line to a sink without letting a faulty sink disturb the caller.

    Args:
        sink: Destination sink, or None to drop the line
        text: The status line
    """
    if sink is None:
        return
    try:
        sink.log_line(text)
    except Exception as e:
        logger.error("log_sink_error", sink=type(sink).__name__, error=str(e))
