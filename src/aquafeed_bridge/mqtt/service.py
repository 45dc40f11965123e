"""
Bridge service for AquaFeed.

This module wires the broker session, subscriptions, publishing, ingestion
and the log sink together. The HTTP API and the CLI hold one
``BridgeService`` and go through it for everything.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from aiomqtt import Client

from aquafeed_bridge.config.broker import build_broker_config, resolve_broker_config
from aquafeed_bridge.exceptions import (
    ConfigurationError,
    PayloadValidationError,
    SubscribeError,
)
from aquafeed_bridge.ingestion.pipeline import MessageIngestionPipeline
from aquafeed_bridge.schedule import ScheduleSync
from aquafeed_bridge.storage.influx import LogSinkFactory

from .connection import ConnectionManager, ConnectionStatus
from .publisher import PublishGateway, PublishRequest
from .subscriptions import SubscriptionCoordinator, SubscriptionGrant
from .topics import AquaFeedTopics

if TYPE_CHECKING:
    from aquafeed_bridge.config.config_manager import ConfigManager
    from aquafeed_bridge.storage.sinks import BaseLogSink


def has_command_content(record: Mapping[str, Any]) -> bool:
    """A command record needs ``command``, ``schedule``, or ``part`` with ``value``."""
    return bool(
        record.get("command")
        or record.get("schedule")
        or (record.get("part") and record.get("value") is not None),
    )


class BridgeService:
    """
    Main service of the AquaFeed MQTT bridge.

    Owns exactly one ``ConnectionManager``; subscriptions, publishing and
    ingestion all share its session.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        *,
        sink: BaseLogSink | None = None,
        client_factory: Callable[..., Client] = Client,
    ) -> None:
        """
        Initialize the bridge.

        Args:
            config_manager: Configuration manager instance
            sink: Log sink to use instead of the configured backend
            client_factory: Builds the aiomqtt client; replaced in tests

        Raises:
            ConfigurationError: If the broker settings are missing or invalid.
        """
        self.config_manager = config_manager
        self.logger = logging.getLogger("aquafeed_bridge.mqtt.service")

        self.broker_config = resolve_broker_config(config_manager)
        storage_config = config_manager.get_config("system").get("storage", {})

        self.sink = sink or LogSinkFactory.from_config(config_manager)
        self.topics = AquaFeedTopics(self.broker_config.default_publish_topic)
        self.pipeline = MessageIngestionPipeline(
            self.sink,
            plain_text_prefixes=self.broker_config.plain_text_prefixes,
            log_root=storage_config.get("log_root", "user_mqtt_logs"),
        )
        self.connection = ConnectionManager(
            self.broker_config,
            message_handler=self.pipeline.handle,
            client_factory=client_factory,
        )
        self.subscriptions = SubscriptionCoordinator(
            self.connection,
            default_topics=self.broker_config.subscribe_topics,
            default_qos=self.broker_config.default_qos,
        )
        self.publisher = PublishGateway(
            self.connection,
            default_qos=self.broker_config.default_qos,
        )
        self.schedule = ScheduleSync(self.publisher, self.topics)

        self.running = False
        self._loop: asyncio.AbstractEventLoop | None = None
        config_manager.register_listener(self._on_config_change)

    async def start(self, *, subscribe: bool = True) -> list[SubscriptionGrant]:
        """
        Start the bridge: connect the sink and subscribe to configured topics.

        Raises:
            SubscribeError: If the initial subscribe cannot be issued.
        """
        if self.running:
            self.logger.warning("Bridge service is already running")
            return []

        self.logger.info("Starting AquaFeed bridge")
        self._loop = asyncio.get_running_loop()
        if not await self.sink.connect():
            self.logger.warning(
                "%s sink unavailable; inbound entries will not be persisted",
                self.sink.sink_name,
            )
        self.running = True
        if not subscribe:
            return []
        return await self.subscriptions.subscribe()

    async def start_with_retry(self, stop_event: asyncio.Event) -> list[SubscriptionGrant]:
        """Keep trying ``start`` on the reconnect period until it subscribes or stop is set."""
        grants = await self._try_start()
        while grants is None and not stop_event.is_set():
            try:
                await asyncio.wait_for(
                    stop_event.wait(),
                    timeout=self.broker_config.reconnect_period,
                )
            except TimeoutError:
                grants = await self._try_start()
        return grants or []

    async def _try_start(self) -> list[SubscriptionGrant] | None:
        try:
            if self.running:
                return await self.subscriptions.subscribe()
            return await self.start()
        except SubscribeError as e:
            self.logger.error("Initial subscribe failed: %s", e.message)
            return None

    async def stop(self) -> None:
        """Close the broker session and the sink."""
        self.logger.info("Stopping AquaFeed bridge")
        await self.connection.close()
        if self.sink.connected:
            await self.sink.disconnect()
        self.running = False
        self.logger.info("AquaFeed bridge stopped")

    def status(self) -> ConnectionStatus:
        """Connection status; never triggers a connect."""
        return self.connection.status()

    async def subscribe(
        self,
        topics: list[str] | None = None,
        qos: int | None = None,
    ) -> list[SubscriptionGrant]:
        """Subscribe to ``topics``, or the configured topics when omitted."""
        return await self.subscriptions.subscribe(topics, qos)

    async def publish(
        self,
        topic: str,
        payload: Any,
        qos: int | None = None,
        retain: bool | None = None,
    ) -> bool:
        """Publish one message; False on failure."""
        return await self.publisher.publish(topic, payload, qos, retain)

    async def publish_message(
        self,
        topic: str,
        payload: Mapping[str, Any],
        qos: int | None = None,
        retain: bool | None = None,
    ) -> PublishRequest:
        """
        Publish a JSON object on behalf of an HTTP caller.

        Raises:
            PublishError: If the publish fails.
        """
        if self.topics.is_schedule_topic(topic) and not payload.get("targetDeviceId"):
            self.logger.warning(
                "Payload for generic topic %s has no targetDeviceId",
                topic,
            )
        return await self.publisher.publish_or_raise(topic, dict(payload), qos, retain)

    async def publish_command(
        self,
        device_id: str,
        record: Mapping[str, Any],
    ) -> PublishRequest:
        """
        Publish a command record written for ``device_id``.

        The topic is the record's ``topic`` or the device command topic. A
        missing ``targetDeviceId`` is filled from ``device_id``; when the
        record names a different device, the record's value is kept.

        Raises:
            PayloadValidationError: If the record carries no command content.
            PublishError: If the publish fails.
        """
        if not has_command_content(record):
            raise PayloadValidationError(
                f"No valid command, schedule or part data for device {device_id}",
                field="command",
            )

        topic = record.get("topic") or self.topics.device_command(device_id)
        payload = dict(record)
        target = payload.get("targetDeviceId")
        if not target:
            payload["targetDeviceId"] = device_id
        elif target != device_id:
            self.logger.warning(
                "Command for device %s names targetDeviceId %s; using the payload's targetDeviceId",
                device_id,
                target,
            )

        request = await self.publisher.publish_or_raise(
            topic,
            payload,
            qos=record.get("qos"),
            retain=record.get("retain"),
        )
        self.logger.info(
            "Command for %s (target: %s) published to %s",
            device_id,
            payload["targetDeviceId"],
            topic,
        )
        return request

    def get_stats(self) -> dict[str, Any]:
        """Get connection, publish and ingestion statistics."""
        return {
            "running": self.running,
            "connection": self.connection.stats,
            "publisher": self.publisher.stats,
            "ingestion": self.pipeline.stats,
            "subscriptions": self.subscriptions.active_topics,
            "sink": self.sink.sink_name,
        }

    def _on_config_change(self, key: str, config: dict[str, Any]) -> None:
        """Config listener; runs on the watchdog thread."""
        if key != "system" or self._loop is None or self._loop.is_closed():
            return
        future = asyncio.run_coroutine_threadsafe(self.apply_config(config), self._loop)
        future.add_done_callback(self._log_apply_failure)

    def _log_apply_failure(self, future: concurrent.futures.Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self.logger.error(
                "Applying MQTT configuration failed: %s",
                error,
                exc_info=error,
            )

    async def apply_config(self, config: dict[str, Any]) -> None:
        """Re-resolve broker settings after a config reload."""
        current = self.broker_config
        try:
            keep_id = config.get("mqtt", {}).get("client_id") == current.client_id_seed
            updated = build_broker_config(
                config.get("mqtt", {}),
                client_id=current.client_id if keep_id else None,
            )
        except ConfigurationError as e:
            self.logger.error("Ignoring invalid MQTT configuration: %s", e.message)
            return
        if updated == current:
            return

        self.logger.info("MQTT configuration changed, applying")
        self.broker_config = updated
        self.topics = AquaFeedTopics(updated.default_publish_topic)
        self.schedule.topics = self.topics
        self.pipeline.plain_text_prefixes = updated.plain_text_prefixes
        self.publisher.default_qos = updated.default_qos
        self.subscriptions.default_qos = updated.default_qos
        topics_changed = updated.subscribe_topics != current.subscribe_topics
        if topics_changed:
            self.subscriptions.default_topics = updated.subscribe_topics
            self.subscriptions.forget()

        await self.connection.update_config(updated)
        if self.running and (topics_changed or not self.connection.connected):
            try:
                await self.subscriptions.subscribe()
            except SubscribeError as e:
                self.logger.error("Resubscribe after config change failed: %s", e.message)
