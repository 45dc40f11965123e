"""
Persistence sink abstraction for bridge log entries.

A sink receives ``write(path, entry)`` calls from the ingestion pipeline,
one per accepted message. Paths are deterministic, so writing the same
entry twice overwrites rather than duplicates.

Extension:
    - Subclass `BaseLogSink` and implement the abstract properties and
      async methods.
    - Add the class to `LogSinkFactory._sinks` under its `storage.backend` name.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import os
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from aquafeed_bridge.exceptions import PersistenceError

if TYPE_CHECKING:
    from aquafeed_bridge.config.config_manager import ConfigManager
    from aquafeed_bridge.ingestion.models import LogEntry


@dataclass
class SinkHealth:
    """Health status data model for log sinks."""

    connected: bool
    sink_name: str
    sink_version: str
    last_check: float | None = None  # Unix timestamp
    error_message: str | None = None
    metrics: dict[str, Any] | None = None


@dataclass
class SinkMetrics:
    """Write counters for a log sink."""

    total_writes: int = 0
    successful_writes: int = 0
    failed_writes: int = 0
    avg_write_time_ms: float = 0.0
    connection_uptime_seconds: float = 0.0

    def record_write(self, started: float, *, success: bool) -> None:
        """Update counters for one write that began at ``started``."""
        self.total_writes += 1
        if not success:
            self.failed_writes += 1
            return
        write_time = (time.time() - started) * 1000
        self.successful_writes += 1
        self.avg_write_time_ms = (
            self.avg_write_time_ms * (self.successful_writes - 1) + write_time
        ) / self.successful_writes


class BaseLogSink(abc.ABC):
    """
    Abstract base class for log entry sinks.

    Provides connection management, writes and health reporting. The
    ingestion pipeline only depends on ``write``.
    """

    def __init__(self, config_manager: ConfigManager) -> None:
        """
        Initialize the sink with the configuration manager.

        Args:
            config_manager: Configuration manager instance
        """
        self.config = config_manager
        self.logger = logging.getLogger(f"aquafeed_bridge.storage.{self.sink_name.lower()}")
        self.connected = False
        self.metrics = SinkMetrics()
        self._connected_at: float | None = None

    @property
    @abc.abstractmethod
    def sink_name(self) -> str:
        """Return the name of the sink (e.g. 'JSONFile', 'InfluxDB')."""
        ...

    @property
    @abc.abstractmethod
    def sink_version(self) -> str:
        """Return the version of the sink implementation."""
        ...

    @abc.abstractmethod
    async def connect(self) -> bool:
        """
        Connect to the storage.

        Returns:
            True if the sink is ready to accept writes
        """
        ...

    @abc.abstractmethod
    async def disconnect(self) -> None:
        """Release resources held by the sink."""
        ...

    @abc.abstractmethod
    async def write(self, path: str, entry: LogEntry) -> bool:
        """
        Persist one entry at ``path``, overwriting any previous value.

        Returns:
            True if the entry was stored
        """
        ...

    @abc.abstractmethod
    async def health_check(self) -> bool:
        """Return True if the sink is healthy."""
        ...

    def _mark_connected(self, connected: bool) -> None:
        self.connected = connected
        self._connected_at = time.time() if connected else None

    def get_metrics(self) -> SinkMetrics:
        """Return the sink's write metrics."""
        if self._connected_at is not None:
            self.metrics.connection_uptime_seconds = time.time() - self._connected_at
        return self.metrics

    async def get_health_status(self) -> SinkHealth:
        """Run a health check and describe the result."""
        error_message = None
        try:
            healthy = await self.health_check()
        except Exception as e:
            self.logger.exception("Health check raised")
            healthy = False
            error_message = str(e)
        if not healthy and error_message is None:
            error_message = f"{self.sink_name} sink is not available"
        return SinkHealth(
            connected=healthy,
            sink_name=self.sink_name,
            sink_version=self.sink_version,
            last_check=time.time(),
            error_message=error_message,
            metrics=asdict(self.get_metrics()),
        )


class JSONFileLogSink(BaseLogSink):
    """
    Store each entry as a JSON document under a root directory.

    ``user_mqtt_logs/acct/topic/1700000000000`` is written to
    ``<root>/user_mqtt_logs/acct/topic/1700000000000.json``.
    """

    def __init__(self, config_manager: ConfigManager) -> None:
        """Initialize the JSON file sink from the ``storage`` config section."""
        super().__init__(config_manager)
        storage_config = self.config.get_config("system").get("storage", {})
        self.root = Path(storage_config.get("path", "/data/logs"))

    @property
    def sink_name(self) -> str:
        """Return the name of the sink."""
        return "JSONFile"

    @property
    def sink_version(self) -> str:
        """Return the version of the sink implementation."""
        return "1.0.0"

    def resolve(self, path: str) -> Path:
        """Map a storage path onto a file below the root directory."""
        parts = [p for p in path.split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise PersistenceError(f"Invalid storage path: {path!r}", path=path)
        *dirs, name = parts
        return self.root.joinpath(*dirs, f"{name}.json")

    async def connect(self) -> bool:
        """Create the root directory if needed."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError:
            self.logger.exception("Log directory %s is not accessible", self.root)
            self._mark_connected(False)
            return False
        self._mark_connected(True)
        self.logger.info("JSON file sink writing to %s", self.root)
        return True

    async def disconnect(self) -> None:
        """Mark the sink disconnected."""
        self._mark_connected(False)
        self.logger.info("JSON file sink closed")

    async def write(self, path: str, entry: LogEntry) -> bool:
        """Write the entry to its file, replacing any existing document."""
        started = time.time()
        if not self.connected:
            self.logger.warning("JSON file sink not connected, dropping entry %s", path)
            self.metrics.record_write(started, success=False)
            return False

        target = self.resolve(path)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write_file, target, entry.to_dict())
        except (OSError, TypeError, ValueError) as e:
            self.metrics.record_write(started, success=False)
            raise PersistenceError(f"Failed to write {target}: {e}", path=path) from e
        self.metrics.record_write(started, success=True)
        return True

    @staticmethod
    def _write_file(target: Path, data: dict[str, Any]) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(".json.tmp")
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, target)

    def read(self, path: str) -> dict[str, Any] | None:
        """Return the stored document at ``path``, or None if absent."""
        target = self.resolve(path)
        if not target.exists():
            return None
        with open(target) as f:
            return json.load(f)

    async def health_check(self) -> bool:
        """Check that the root directory is still writable."""
        if not self.connected:
            return await self.connect()
        if self.root.exists() and os.access(self.root, os.W_OK):
            return True
        self.logger.error("Log directory %s not accessible", self.root)
        self._mark_connected(False)
        return False


class NullLogSink(BaseLogSink):
    """Sink that discards every entry."""

    @property
    def sink_name(self) -> str:
        return "Null"

    @property
    def sink_version(self) -> str:
        return "1.0.0"

    async def connect(self) -> bool:
        self._mark_connected(True)
        self.logger.info("Connected to null sink (entries will be discarded)")
        return True

    async def disconnect(self) -> None:
        self._mark_connected(False)

    async def write(self, path: str, entry: LogEntry) -> bool:
        self.metrics.record_write(time.time(), success=True)
        self.logger.debug("Discarded entry %s (null sink)", path)
        return True

    async def health_check(self) -> bool:
        return True
