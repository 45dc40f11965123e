"""Topic subscriptions for the bridge session."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from aiomqtt import MqttError

from aquafeed_bridge.config.broker import VALID_QOS
from aquafeed_bridge.exceptions import BridgeConnectionError, SubscribeError

if TYPE_CHECKING:
    from .connection import ConnectionManager, ReadyHandle


@dataclass(frozen=True)
class SubscriptionGrant:
    """Broker response for one requested topic."""

    topic: str
    requested_qos: int
    granted_qos: int

    @property
    def ok(self) -> bool:
        """The broker granted a valid QoS (0, 1 or 2)."""
        return self.granted_qos in VALID_QOS

    def to_dict(self) -> dict[str, object]:
        return {
            "topic": self.topic,
            "requestedQos": self.requested_qos,
            "grantedQos": self.granted_qos,
            "ok": self.ok,
        }


class SubscriptionCoordinator:
    """
    Subscribe the session to a topic set and keep it subscribed.

    The most recent successful topic set is re-issued after every
    reconnect, since sessions are opened with a clean session flag.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        *,
        default_topics: Iterable[str] = (),
        default_qos: int = 1,
    ) -> None:
        self.connection = connection
        self.default_topics = tuple(default_topics)
        self.default_qos = default_qos
        self.logger = logging.getLogger("aquafeed_bridge.mqtt.subscriptions")
        self._active: dict[str, int] = {}
        connection.add_connect_listener(self._resubscribe)

    @property
    def active_topics(self) -> dict[str, int]:
        """Topics currently remembered for resubscription, with their QoS."""
        return dict(self._active)

    def forget(self) -> None:
        """Drop the remembered topic set so reconnects no longer restore it."""
        self._active.clear()

    async def subscribe(
        self,
        topics: Iterable[str] | None = None,
        qos: int | None = None,
    ) -> list[SubscriptionGrant]:
        """
        Subscribe to ``topics`` (default: configured topics) in one batch.

        Returns:
            One grant per topic, in request order. Grants with an invalid
            QoS are logged but not raised.

        Raises:
            SubscribeError: If the session cannot be acquired or the broker
                rejects the subscribe call.
        """
        requested = list(self.default_topics if topics is None else topics)
        level = self.default_qos if qos is None else qos
        if not requested:
            self.logger.info("No topics to subscribe to")
            return []

        try:
            handle = await self.connection.acquire()
        except BridgeConnectionError as e:
            raise SubscribeError(
                f"Cannot subscribe, no MQTT connection: {e.message}",
                topics=requested,
            ) from e

        grants = await self._issue(handle, [(topic, level) for topic in requested])
        for grant in grants:
            if grant.ok:
                self._active[grant.topic] = grant.requested_qos
        return grants

    async def _issue(
        self,
        handle: ReadyHandle,
        subscriptions: list[tuple[str, int]],
    ) -> list[SubscriptionGrant]:
        topics = [topic for topic, _ in subscriptions]
        try:
            granted = await handle.subscribe(subscriptions)
        except (MqttError, OSError) as e:
            self.logger.exception("Failed to subscribe to %s", ", ".join(topics))
            raise SubscribeError(f"Failed to subscribe: {e}", topics=topics) from e

        grants = [
            SubscriptionGrant(topic=topic, requested_qos=qos, granted_qos=code)
            for (topic, qos), code in zip(subscriptions, granted)
        ]
        for grant in grants:
            if grant.ok:
                self.logger.info(
                    "Subscribed to topic '%s' (QoS %d)",
                    grant.topic,
                    grant.granted_qos,
                )
            else:
                self.logger.error(
                    "Broker refused subscription to '%s' (granted %d)",
                    grant.topic,
                    grant.granted_qos,
                )
        return grants

    async def _resubscribe(self, handle: ReadyHandle) -> None:
        if not self._active:
            return
        self.logger.info("Restoring %d subscriptions after connect", len(self._active))
        try:
            await self._issue(handle, list(self._active.items()))
        except SubscribeError:
            self.logger.warning("Resubscription failed; waiting for the next reconnect")
