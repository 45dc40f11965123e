"""Persistence sinks for bridge log entries."""

from .influx import InfluxDBLogSink, LogSinkFactory
from .sinks import BaseLogSink, JSONFileLogSink, NullLogSink, SinkHealth, SinkMetrics

__all__ = [
    "BaseLogSink",
    "InfluxDBLogSink",
    "JSONFileLogSink",
    "LogSinkFactory",
    "NullLogSink",
    "SinkHealth",
    "SinkMetrics",
]
