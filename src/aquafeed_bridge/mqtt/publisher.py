"""Outbound publishing through the shared broker session."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from aiomqtt import MqttError

from aquafeed_bridge.config.broker import VALID_QOS
from aquafeed_bridge.exceptions import BridgeConnectionError, PublishError

from .topics import validate_publish_topic

if TYPE_CHECKING:
    from .connection import ConnectionManager


def encode_payload(payload: Any) -> str | bytes:
    """Pass str and bytes through; JSON-encode dicts and lists."""
    if isinstance(payload, (str, bytes)):
        return payload
    if isinstance(payload, bytearray):
        return bytes(payload)
    if isinstance(payload, (dict, list)):
        return json.dumps(payload)
    raise TypeError(f"Unsupported payload type: {type(payload).__name__}")


@dataclass(frozen=True)
class PublishRequest:
    """One outbound message with resolved QoS and retain flag."""

    topic: str
    payload: str | bytes
    qos: int
    retain: bool


class PublishGateway:
    """
    Publish single messages on the shared session.

    No retries and no queueing: a failed publish is reported once and the
    caller decides what to do.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        *,
        default_qos: int = 1,
        default_retain: bool = False,
    ) -> None:
        self.connection = connection
        self.default_qos = default_qos
        self.default_retain = default_retain
        self.logger = logging.getLogger("aquafeed_bridge.mqtt.publisher")
        self._stats = {"messages_published": 0, "publish_failures": 0}

    @property
    def stats(self) -> dict[str, int]:
        """Return a copy of the publish counters."""
        return self._stats.copy()

    def build_request(
        self,
        topic: str,
        payload: Any,
        qos: int | None = None,
        retain: bool | None = None,
    ) -> PublishRequest:
        """
        Resolve defaults and encode the payload.

        Raises:
            PublishError: If the topic is not publishable or QoS is not 0, 1 or 2.
        """
        if not validate_publish_topic(topic):
            raise PublishError(f"Invalid publish topic {topic!r}", topic=topic)
        level = self.default_qos if qos is None else qos
        if level not in VALID_QOS:
            raise PublishError(f"Invalid QoS level {level!r}", topic=topic)
        try:
            body = encode_payload(payload)
        except TypeError as e:
            raise PublishError(str(e), topic=topic) from e
        return PublishRequest(
            topic=topic,
            payload=body,
            qos=level,
            retain=self.default_retain if retain is None else bool(retain),
        )

    async def publish_or_raise(
        self,
        topic: str,
        payload: Any,
        qos: int | None = None,
        retain: bool | None = None,
    ) -> PublishRequest:
        """
        Publish one message and wait for the broker to accept it.

        Raises:
            PublishError: If the request is invalid, no session can be
                acquired or the broker rejects the publish.
        """
        request = self.build_request(topic, payload, qos, retain)
        try:
            handle = await self.connection.acquire()
            await handle.publish(
                request.topic,
                request.payload,
                qos=request.qos,
                retain=request.retain,
            )
        except BridgeConnectionError as e:
            self._stats["publish_failures"] += 1
            raise PublishError(
                f"Cannot publish, no MQTT connection: {e.message}",
                topic=topic,
            ) from e
        except (MqttError, OSError) as e:
            self._stats["publish_failures"] += 1
            raise PublishError(f"Failed to publish to {topic}: {e}", topic=topic) from e

        self._stats["messages_published"] += 1
        self.logger.info(
            "Published to %s (QoS %d, retain=%s)",
            request.topic,
            request.qos,
            request.retain,
        )
        return request

    async def publish(
        self,
        topic: str,
        payload: Any,
        qos: int | None = None,
        retain: bool | None = None,
    ) -> bool:
        """Publish one message; return False instead of raising on failure."""
        try:
            await self.publish_or_raise(topic, payload, qos, retain)
        except PublishError as e:
            self.logger.error("Publish to %s failed: %s", topic, e.message)
            return False
        return True
