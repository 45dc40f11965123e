"""Fake aiomqtt clients, config manager and log sink for bridge tests."""

from __future__ import annotations

import asyncio
import logging
from types import SimpleNamespace
from typing import Any

from aiomqtt import MqttError

from aquafeed_bridge.config.config_manager import ConfigManager
from aquafeed_bridge.storage.sinks import BaseLogSink

_END = object()


def make_message(
    topic: str,
    payload: bytes | str,
    *,
    qos: int = 0,
    retain: bool = False,
) -> SimpleNamespace:
    """Build an object shaped like ``aiomqtt.Message``."""
    return SimpleNamespace(
        topic=SimpleNamespace(value=topic),
        payload=payload,
        qos=qos,
        retain=retain,
    )


class FakeMessages:
    """Async iterator fed from a queue; an exception item is raised."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[Any] = asyncio.Queue()

    def __aiter__(self) -> FakeMessages:
        return self

    async def __anext__(self) -> Any:
        item = await self.queue.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeClient:
    """Stands in for ``aiomqtt.Client``; behaviour is driven by its factory."""

    def __init__(self, factory: FakeClientFactory, **kwargs: Any) -> None:
        self.factory = factory
        self.kwargs = kwargs
        self.messages = FakeMessages()
        self.subscribe_calls: list[list[tuple[str, int]]] = []
        self.published: list[dict[str, Any]] = []
        self.entered = False
        self.exited = False

    async def __aenter__(self) -> FakeClient:
        factory = self.factory
        if factory.connect_gate is not None:
            await factory.connect_gate.wait()
        if factory.connect_failures:
            error = factory.connect_failures.pop(0)
            raise error
        self.entered = True
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.exited = True
        self.messages.queue.put_nowait(_END)

    async def subscribe(self, subscriptions: list[tuple[str, int]]) -> list[int]:
        self.subscribe_calls.append(list(subscriptions))
        if self.factory.subscribe_error is not None:
            raise self.factory.subscribe_error
        return [
            self.factory.grant_overrides.get(topic, qos) for topic, qos in subscriptions
        ]

    async def publish(
        self,
        topic: str,
        payload: Any = None,
        qos: int = 0,
        retain: bool = False,
    ) -> None:
        if self.factory.publish_error is not None:
            raise self.factory.publish_error
        self.published.append(
            {"topic": topic, "payload": payload, "qos": qos, "retain": retain},
        )

    def deliver(self, message: Any) -> None:
        """Queue an inbound message for the listener."""
        self.messages.queue.put_nowait(message)

    def drop(self) -> None:
        """Simulate the transport going away."""
        self.messages.queue.put_nowait(MqttError("Disconnected during message iteration"))


class FakeClientFactory:
    """Callable used as ``client_factory``; records every client it builds."""

    def __init__(self) -> None:
        self.clients: list[FakeClient] = []
        self.connect_failures: list[BaseException] = []
        self.connect_gate: asyncio.Event | None = None
        self.subscribe_error: BaseException | None = None
        self.publish_error: BaseException | None = None
        self.grant_overrides: dict[str, int] = {}

    def __call__(self, **kwargs: Any) -> FakeClient:
        client = FakeClient(self, **kwargs)
        self.clients.append(client)
        return client

    @property
    def latest(self) -> FakeClient:
        return self.clients[-1]

    @property
    def connected_clients(self) -> list[FakeClient]:
        return [c for c in self.clients if c.entered]

    @property
    def published(self) -> list[dict[str, Any]]:
        return [p for c in self.clients for p in c.published]


class MockConfigManager(ConfigManager):
    """Configuration manager with in-memory test data and no file watchers."""

    def __init__(self, config_dir: str = "/data", **mqtt_overrides: Any) -> None:
        """Initialize mock configuration manager with test data."""
        self.config_dir = config_dir
        self._listeners: list = []
        self.logger = logging.getLogger("aquafeed_bridge.config")
        self._enable_watchers = False
        self.configs = {
            "system": {
                "version": "1.0",
                "logging": {"level": "INFO"},
                "mqtt": {
                    "url": "mqtt://broker.test:1883",
                    "username": "feeder",
                    "password": "secret",
                    "client_id": "aquafeed-test",
                    "subscribe_topics": ["iot/default_topic"],
                    "default_publish_topic": "iot/commands/default",
                    "default_qos": 1,
                    "keepalive": 60,
                    "connect_timeout": 1.0,
                    "acquire_timeout": 1.0,
                    "reconnect_period": 0.01,
                    "max_reconnect_attempts": 0,
                    "plain_text_prefixes": ["iot/schedule/"],
                    **mqtt_overrides,
                },
                "storage": {
                    "backend": "null",
                    "log_root": "user_mqtt_logs",
                    "path": f"{config_dir}/logs",
                },
                "influxdb": {
                    "url": "http://localhost:8086",
                    "token": "",
                    "org": "",
                    "bucket": "aquafeed",
                    "measurement": "mqtt_log",
                    "timeout": 1000,
                },
                "api": {
                    "enabled": True,
                    "host": "127.0.0.1",
                    "port": 5000,
                    "debug": False,
                    "request_timeout": 2.0,
                },
            },
        }

    def save_config(self, key: str) -> None:
        """Keep changes in memory only."""


class MemoryLogSink(BaseLogSink):
    """Sink that keeps written entries in a dict keyed by path."""

    def __init__(self, config_manager: ConfigManager) -> None:
        super().__init__(config_manager)
        self.entries: dict[str, Any] = {}
        self.writes: list[str] = []
        self.fail_with: BaseException | None = None
        self.reject = False

    @property
    def sink_name(self) -> str:
        return "Memory"

    @property
    def sink_version(self) -> str:
        return "test"

    async def connect(self) -> bool:
        self._mark_connected(True)
        return True

    async def disconnect(self) -> None:
        self._mark_connected(False)

    async def write(self, path: str, entry: Any) -> bool:
        self.writes.append(path)
        if self.fail_with is not None:
            raise self.fail_with
        if self.reject:
            return False
        self.entries[path] = entry
        return True

    async def health_check(self) -> bool:
        return self.connected


async def wait_until(predicate: Any, timeout: float = 1.0) -> None:
    """Poll ``predicate`` until it is true or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)
