"""Tests for outbound publishing."""

import json

import pytest
from aiomqtt import MqttError

from aquafeed_bridge.exceptions import BridgeConnectionError, PublishError
from aquafeed_bridge.mqtt.connection import ConnectionManager
from aquafeed_bridge.mqtt.publisher import PublishGateway, encode_payload
from tests.support.mocks.mock_mqtt import FakeClientFactory


@pytest.fixture
def gateway(connection: ConnectionManager) -> PublishGateway:
    """Gateway with QoS 1 default."""
    return PublishGateway(connection, default_qos=1)


class TestEncodePayload:
    """Payload encoding rules."""

    def test_text_passes_through(self) -> None:
        """Plain text is sent as is."""
        assert encode_payload("true") == "true"
        assert encode_payload("") == ""

    def test_bytes_pass_through(self) -> None:
        """Raw bytes are sent as is."""
        assert encode_payload(b"\x00\x01") == b"\x00\x01"

    def test_dict_is_json(self) -> None:
        """Objects become JSON text."""
        assert json.loads(encode_payload({"command": "feed_now"})) == {
            "command": "feed_now",
        }

    def test_unsupported_type(self) -> None:
        """Other types are rejected."""
        with pytest.raises(TypeError):
            encode_payload(object())


class TestBuildRequest:
    """Request validation and defaults."""

    def test_defaults_applied(self, gateway: PublishGateway) -> None:
        """Missing QoS and retain take the gateway defaults."""
        request = gateway.build_request("iot/commands/default/f1", {"a": 1})

        assert request.qos == 1
        assert request.retain is False
        assert request.payload == '{"a": 1}'

    @pytest.mark.parametrize("topic", ["", "iot/+/x", "iot/#"])
    def test_invalid_topic(self, gateway: PublishGateway, topic: str) -> None:
        """Empty and wildcard topics cannot be published to."""
        with pytest.raises(PublishError):
            gateway.build_request(topic, "x")

    def test_invalid_qos(self, gateway: PublishGateway) -> None:
        """QoS outside 0-2 is rejected."""
        with pytest.raises(PublishError, match="QoS"):
            gateway.build_request("a/b", "x", qos=3)


class TestPublish:
    """Publishing on the shared session."""

    @pytest.mark.asyncio
    async def test_publish_connects_and_sends(
        self,
        gateway: PublishGateway,
        client_factory: FakeClientFactory,
    ) -> None:
        """A publish acquires the session and waits for the broker."""
        request = await gateway.publish_or_raise(
            "iot/schedule/enabled",
            "true",
            qos=1,
            retain=True,
        )

        assert client_factory.published == [
            {
                "topic": "iot/schedule/enabled",
                "payload": "true",
                "qos": 1,
                "retain": True,
            },
        ]
        assert request.retain is True
        assert gateway.stats == {"messages_published": 1, "publish_failures": 0}

    @pytest.mark.asyncio
    async def test_publish_without_connection(
        self,
        gateway: PublishGateway,
        client_factory: FakeClientFactory,
    ) -> None:
        """No session means PublishError caused by the connection error."""
        client_factory.connect_failures = [OSError("refused")]

        with pytest.raises(PublishError) as exc_info:
            await gateway.publish_or_raise("a/b", "x")

        assert isinstance(exc_info.value.__cause__, BridgeConnectionError)
        assert exc_info.value.topic == "a/b"
        assert gateway.stats["publish_failures"] == 1

    @pytest.mark.asyncio
    async def test_broker_rejects_publish(
        self,
        gateway: PublishGateway,
        client_factory: FakeClientFactory,
    ) -> None:
        """A transport error during publish is reported once, never retried."""
        client_factory.publish_error = MqttError("not authorized")

        with pytest.raises(PublishError, match="not authorized"):
            await gateway.publish_or_raise("a/b", "x")

        assert client_factory.published == []

    @pytest.mark.asyncio
    async def test_publish_returns_false_on_failure(
        self,
        gateway: PublishGateway,
        client_factory: FakeClientFactory,
    ) -> None:
        """The non-raising variant reports failure as False."""
        client_factory.publish_error = MqttError("gone")

        assert await gateway.publish("a/b", "x") is False

    @pytest.mark.asyncio
    async def test_publish_returns_true(self, gateway: PublishGateway) -> None:
        """The non-raising variant reports success as True."""
        assert await gateway.publish("a/b", {"k": "v"}) is True
