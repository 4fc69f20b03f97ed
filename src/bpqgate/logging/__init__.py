"""Logging setup and the status line sink for the BPQ gateway."""

from bpqgate.logging.config import configure_logging, get_logger
from bpqgate.logging.sink import LogSink, MemorySink, StructlogSink, emit

__all__ = [
    "LogSink",
    "MemorySink",
    "StructlogSink",
    "configure_logging",
    "emit",
    "get_logger",
]
