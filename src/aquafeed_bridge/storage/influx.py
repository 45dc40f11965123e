"""
InfluxDB log sink and the sink factory.

Entries are written as points of a single measurement, tagged with the
account id and topic and timestamped in milliseconds, so a repeated write
of the same entry replaces the earlier point.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import TYPE_CHECKING, Any, ClassVar

from influxdb_client.client.influxdb_client import InfluxDBClient
from influxdb_client.client.write_api import SYNCHRONOUS
from influxdb_client.domain.write_precision import WritePrecision

from aquafeed_bridge.exceptions import PersistenceError

from .sinks import BaseLogSink, JSONFileLogSink, NullLogSink

if TYPE_CHECKING:
    from aquafeed_bridge.config.config_manager import ConfigManager
    from aquafeed_bridge.ingestion.models import LogEntry

# Entry keys carried as tags or as the point time rather than as fields.
_NON_FIELD_KEYS = frozenset({"accountId", "topic", "timestamp"})


def entry_to_point(entry: LogEntry, path: str, measurement: str) -> dict[str, Any]:
    """Build an InfluxDB point dict from a log entry."""
    fields: dict[str, Any] = {"path": path}
    for key, value in entry.to_dict().items():
        if key in _NON_FIELD_KEYS or value is None:
            continue
        if isinstance(value, (bool, int, float, str)):
            fields[key] = value
        else:
            fields[key] = json.dumps(value, sort_keys=True)
    return {
        "measurement": measurement,
        "tags": {"account_id": entry.account_id, "topic": entry.topic},
        "fields": fields,
        "time": entry.storage_timestamp,
    }


class InfluxDBLogSink(BaseLogSink):
    """Write log entries to an InfluxDB 2.x bucket."""

    def __init__(self, config_manager: ConfigManager) -> None:
        """
        Initialize the sink from the ``influxdb`` config section.

        Args:
            config_manager: Configuration manager instance
        """
        self.client: InfluxDBClient | None = None
        self.write_api: Any | None = None
        super().__init__(config_manager)

    @property
    def sink_name(self) -> str:
        """Return the name of the sink."""
        return "InfluxDB"

    @property
    def sink_version(self) -> str:
        """Return the version of the sink implementation."""
        return "2.0.0"

    def _get_influx_config(self) -> dict[str, Any]:
        return self.config.get_config("system").get("influxdb", {})

    async def connect(self) -> bool:
        """
        Connect to InfluxDB and verify the server answers a ping.

        Returns:
            True if the connection was successful
        """
        config = self._get_influx_config()
        timeout = int(config.get("timeout", 10000))
        self.logger.info("Connecting to InfluxDB at %s", config.get("url"))
        try:
            self.client = InfluxDBClient(
                url=config.get("url", "http://localhost:8086"),
                token=config.get("token") or None,
                org=config.get("org") or None,
                timeout=timeout,
            )
            self.write_api = self.client.write_api(write_options=SYNCHRONOUS)
            loop = asyncio.get_running_loop()
            reachable = await asyncio.wait_for(
                loop.run_in_executor(None, self.client.ping),
                timeout=timeout / 1000,
            )
        except TimeoutError:
            self.logger.exception("Connection to InfluxDB timed out after %dms", timeout)
            await self._cleanup_connection()
            return False
        except Exception:
            self.logger.exception("Failed to connect to InfluxDB")
            await self._cleanup_connection()
            return False

        if not reachable:
            self.logger.error("InfluxDB did not answer ping")
            await self._cleanup_connection()
            return False

        self._mark_connected(True)
        self.logger.info("Successfully connected to InfluxDB")
        return True

    async def _cleanup_connection(self) -> None:
        if self.write_api:
            self.write_api.close()
            self.write_api = None
        if self.client:
            self.client.close()
            self.client = None
        self._mark_connected(False)

    async def disconnect(self) -> None:
        """Close the write API and the client."""
        if self.client:
            await self._cleanup_connection()
            self.logger.info("Disconnected from InfluxDB")

    async def write(self, path: str, entry: LogEntry) -> bool:
        """Write one point for the entry."""
        started = time.time()
        if not self.connected or not self.write_api:
            self.logger.warning("InfluxDB not connected, dropping entry %s", path)
            self.metrics.record_write(started, success=False)
            return False

        config = self._get_influx_config()
        point = entry_to_point(entry, path, config.get("measurement", "mqtt_log"))
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: self.write_api.write(
                    bucket=config.get("bucket", "aquafeed"),
                    org=config.get("org") or None,
                    record=point,
                    write_precision=WritePrecision.MS,
                ),
            )
        except Exception as e:
            self.metrics.record_write(started, success=False)
            raise PersistenceError(f"InfluxDB write failed: {e}", path=path) from e
        self.metrics.record_write(started, success=True)
        self.logger.debug("Stored entry %s in InfluxDB", path)
        return True

    async def health_check(self) -> bool:
        """Ping the server, connecting first if needed."""
        if not self.connected or not self.client:
            return await self.connect()
        loop = asyncio.get_running_loop()
        try:
            healthy = await loop.run_in_executor(None, self.client.ping)
        except Exception:
            self.logger.exception("InfluxDB health check failed")
            healthy = False
        if not healthy:
            self._mark_connected(False)
        return bool(healthy)


class LogSinkFactory:
    """Create log sinks by the name used in ``storage.backend``."""

    _sinks: ClassVar[dict[str, type[BaseLogSink]]] = {
        "influxdb": InfluxDBLogSink,
        "json": JSONFileLogSink,
        "null": NullLogSink,
    }

    @classmethod
    def create_sink(cls, sink_type: str, config_manager: ConfigManager) -> BaseLogSink:
        """
        Create a sink instance.

        Raises:
            ValueError: If the sink type is not registered
        """
        if sink_type not in cls._sinks:
            available = ", ".join(cls._sinks.keys())
            raise ValueError(f"Unsupported sink type '{sink_type}'. Available: {available}")
        return cls._sinks[sink_type](config_manager)

    @classmethod
    def from_config(cls, config_manager: ConfigManager) -> BaseLogSink:
        """Create the sink named in the ``storage`` config section."""
        storage_config = config_manager.get_config("system").get("storage", {})
        return cls.create_sink(storage_config.get("backend", "json"), config_manager)
