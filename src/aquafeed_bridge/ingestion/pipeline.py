"""
Inbound message ingestion for the AquaFeed bridge.

Every message delivered on a subscribed topic flows through
``MessageIngestionPipeline.handle``: decode, parse, classify, validate,
derive the account, build a log entry and hand it to the persistence sink.
Nothing here ever raises to the transport and nothing here ever publishes.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from aquafeed_bridge.exceptions import PayloadParseError, PayloadValidationError

from .models import (
    AcknowledgementPayload,
    CommandPayload,
    InboundMessage,
    LogEntry,
    ParsedPayload,
    TelemetryPayload,
    UnparseablePayload,
    build_log_entry,
    classify_record,
    derive_account_id,
    storage_path,
)

if TYPE_CHECKING:
    from aquafeed_bridge.storage.sinks import BaseLogSink


def parse_payload(message: InboundMessage) -> ParsedPayload:
    """
    Decode and classify a raw payload.

    Returns an ``UnparseablePayload`` for anything that is not a JSON object.
    """
    try:
        text = message.raw_payload.decode("utf-8")
    except UnicodeDecodeError:
        return UnparseablePayload(
            text=message.raw_payload.decode("utf-8", "replace"),
            reason="payload is not valid UTF-8",
        )
    try:
        record = json.loads(text)
    except ValueError:
        return UnparseablePayload(text=text, reason="payload is not JSON")
    if not isinstance(record, dict):
        return UnparseablePayload(
            text=text,
            reason=f"payload is a JSON {type(record).__name__}, not an object",
        )
    return classify_record(record)


class MessageIngestionPipeline:
    """Classify, validate and persist inbound broker messages."""

    def __init__(
        self,
        sink: BaseLogSink,
        *,
        plain_text_prefixes: Iterable[str] = ("iot/schedule/",),
        log_root: str = "user_mqtt_logs",
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            sink: Persistence sink receiving one write per accepted message.
            plain_text_prefixes: Topic prefixes whose non-JSON payloads are expected.
            log_root: Root segment of every storage path.
        """
        self.sink = sink
        self.plain_text_prefixes = tuple(plain_text_prefixes)
        self.log_root = log_root
        self.logger = logging.getLogger("aquafeed_bridge.ingestion")
        self._stats = {
            "messages_received": 0,
            "messages_dropped": 0,
            "entries_persisted": 0,
            "write_failures": 0,
        }

    @property
    def stats(self) -> dict[str, int]:
        """Return a copy of the pipeline counters."""
        return self._stats.copy()

    def is_plain_text_topic(self, topic: str) -> bool:
        """Check whether a topic belongs to the plain-text command namespace."""
        return any(topic.startswith(prefix) for prefix in self.plain_text_prefixes)

    async def handle(self, message: InboundMessage) -> LogEntry | None:
        """
        Process one inbound message.

        Returns:
            The persisted ``LogEntry``, or ``None`` if the message was dropped
            or the sink write failed.
        """
        self._stats["messages_received"] += 1
        self.logger.debug(
            "Message received on topic %s (%d bytes)",
            message.topic,
            len(message.raw_payload),
        )

        try:
            payload = self._parse(message)
            self._validate(message, payload)
        except PayloadParseError:
            self._stats["messages_dropped"] += 1
            return None
        except PayloadValidationError as e:
            self.logger.warning("Dropping message on %s: %s", message.topic, e.message)
            self._stats["messages_dropped"] += 1
            return None

        entry = build_log_entry(message, payload, derive_account_id(payload))
        path = storage_path(entry, self.log_root)

        if await self._write(path, entry):
            self._stats["entries_persisted"] += 1
            self.logger.debug("Persisted %s entry at %s", payload.kind, path)
            return entry
        return None

    def _parse(self, message: InboundMessage) -> ParsedPayload:
        payload = parse_payload(message)
        if not isinstance(payload, UnparseablePayload):
            return payload

        if self.is_plain_text_topic(message.topic):
            self.logger.info(
                "Plain-text message on %s: %s",
                message.topic,
                payload.text,
            )
        else:
            self.logger.warning(
                "Unparseable payload on %s (%s): %s",
                message.topic,
                payload.reason,
                payload.text,
            )
        raise PayloadParseError(
            payload.reason,
            topic=message.topic,
            raw_payload=message.raw_payload,
        )

    def _validate(self, message: InboundMessage, payload: ParsedPayload) -> None:
        """Apply per-variant rules; raise for drops, log the soft warnings."""
        topic = message.topic
        if isinstance(payload, CommandPayload):
            if not payload.is_complete:
                field = "part" if payload.part is None else "value"
                raise PayloadValidationError(
                    f"'{payload.command}' command without '{field}'",
                    topic=topic,
                    field=field,
                )
            if payload.target_device_id is None:
                self.logger.warning(
                    "Command on %s has no targetDeviceId; using deviceId or unknown_device",
                    topic,
                )
        elif isinstance(payload, AcknowledgementPayload):
            if payload.device_id is None and payload.target_device_id is None:
                raise PayloadValidationError(
                    "acknowledgement without deviceId or targetDeviceId",
                    topic=topic,
                    field="deviceId",
                )
            if not payload.acknowledges_config:
                self.logger.warning(
                    "Acknowledgement on %s names neither a schedule nor a part",
                    topic,
                )
        elif isinstance(payload, TelemetryPayload):
            if payload.device_id is None and payload.target_device_id is None:
                self.logger.warning(
                    "Message on %s has no deviceId or targetDeviceId; logging under unknown_device",
                    topic,
                )
            if payload.timestamp is None:
                self.logger.info(
                    "Message on %s has no timestamp; using receipt time",
                    topic,
                )

    async def _write(self, path: str, entry: LogEntry) -> bool:
        try:
            written = await self.sink.write(path, entry)
        except Exception:
            self.logger.exception("Failed to persist entry at %s", path)
            self._stats["write_failures"] += 1
            return False
        if not written:
            self.logger.error("Sink rejected entry at %s", path)
            self._stats["write_failures"] += 1
            return False
        return True


def describe(entry: LogEntry) -> dict[str, Any]:
    """Short summary used in debug output and the CLI."""
    return {
        "account": entry.account_id,
        "topic": entry.topic,
        "timestamp": entry.storage_timestamp,
    }
