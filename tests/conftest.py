"""
Pytest configuration and shared fixtures for AquaFeed bridge tests.

Fakes live in tests/support/mocks; the fixtures here wire them together.
"""

from __future__ import annotations

import os

import pytest
import pytest_asyncio

from aquafeed_bridge.config.broker import build_broker_config
from aquafeed_bridge.mqtt.connection import ConnectionManager
from tests.support.mocks.mock_mqtt import (
    FakeClientFactory,
    MemoryLogSink,
    MockConfigManager,
)


@pytest.fixture(autouse=True)
def clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Clear AQUAFEED_ env vars before each test."""
    for k in list(os.environ.keys()):
        if k.startswith("AQUAFEED_"):
            monkeypatch.delenv(k, raising=False)


@pytest.fixture
def config_manager(tmp_path) -> MockConfigManager:
    """In-memory configuration pointing at a test broker."""
    return MockConfigManager(str(tmp_path))


@pytest.fixture
def client_factory() -> FakeClientFactory:
    """Factory producing fake aiomqtt clients."""
    return FakeClientFactory()


@pytest.fixture
def memory_sink(config_manager: MockConfigManager) -> MemoryLogSink:
    """Log sink that records writes in memory."""
    return MemoryLogSink(config_manager)


@pytest.fixture
def broker_config(config_manager: MockConfigManager):
    """Broker settings resolved from the test configuration."""
    return build_broker_config(config_manager.get_config("system")["mqtt"])


@pytest_asyncio.fixture
async def connection(broker_config, client_factory: FakeClientFactory):
    """Connection manager using fake clients; closed after the test."""
    manager = ConnectionManager(broker_config, client_factory=client_factory)
    yield manager
    await manager.close()
