"""Inbound message types and the tagged payload variants."""

from __future__ import annotations

import math
import re
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, ClassVar, Mapping, Union

UNKNOWN_DEVICE = "unknown_device"

SCHEDULE_PART_COMMAND = "set_schedule_part"
CONFIG_RECEIVED_ACK = "config_received"

# Characters that cannot appear in a storage key segment.
_RESERVED_KEY_CHARS = re.compile(r"[.#$\[\]/]")


def sanitize_key(value: str) -> str:
    """Replace reserved path characters with underscores."""
    return _RESERVED_KEY_CHARS.sub("_", value)


def now_ms() -> int:
    """Return the current time as epoch milliseconds."""
    return int(time.time() * 1000)


def _frozen(record: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(record))


def _identifier(value: Any) -> str | None:
    """Normalise an id field; empty values count as absent."""
    if value is None or value == "":
        return None
    return str(value)


@dataclass(frozen=True)
class InboundMessage:
    """A message delivered by the broker, immutable once received."""

    topic: str
    raw_payload: bytes
    qos: int = 0
    retained: bool = False
    received_at: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class CommandPayload:
    """A schedule component command echoed on a subscribed topic."""

    kind: ClassVar[str] = "command"

    record: Mapping[str, Any]
    command: str
    part: Any = None
    value: Any = None
    target_device_id: str | None = None
    device_id: str | None = None

    @property
    def is_complete(self) -> bool:
        """Both part and value are present."""
        return self.part is not None and self.value is not None


@dataclass(frozen=True)
class AcknowledgementPayload:
    """A device acknowledging a received configuration."""

    kind: ClassVar[str] = "acknowledgement"

    record: Mapping[str, Any]
    ack_type: str
    acknowledged_schedule: Any = None
    acknowledged_part: Any = None
    device_id: str | None = None
    target_device_id: str | None = None

    @property
    def acknowledges_config(self) -> bool:
        """The ack names the schedule or part it confirms."""
        return (
            self.acknowledged_schedule is not None
            or self.acknowledged_part is not None
        )


@dataclass(frozen=True)
class TelemetryPayload:
    """Any other structured record from a device."""

    kind: ClassVar[str] = "telemetry"

    record: Mapping[str, Any]
    device_id: str | None = None
    target_device_id: str | None = None
    timestamp: Any = None


@dataclass(frozen=True)
class UnparseablePayload:
    """A payload that is not a JSON object."""

    kind: ClassVar[str] = "unparseable"

    text: str
    reason: str

    @property
    def record(self) -> Mapping[str, Any]:
        """Unparseable payloads carry no passthrough fields."""
        return MappingProxyType({})


ParsedPayload = Union[
    CommandPayload,
    AcknowledgementPayload,
    TelemetryPayload,
    UnparseablePayload,
]


def classify_record(record: Mapping[str, Any]) -> ParsedPayload:
    """Pick the variant for a parsed JSON object."""
    frozen = _frozen(record)
    if record.get("command") == SCHEDULE_PART_COMMAND:
        return CommandPayload(
            record=frozen,
            command=SCHEDULE_PART_COMMAND,
            part=record.get("part"),
            value=record.get("value"),
            target_device_id=_identifier(record.get("targetDeviceId")),
            device_id=_identifier(record.get("deviceId")),
        )
    if record.get("ackType") == CONFIG_RECEIVED_ACK:
        return AcknowledgementPayload(
            record=frozen,
            ack_type=CONFIG_RECEIVED_ACK,
            acknowledged_schedule=record.get("acknowledgedSchedule"),
            acknowledged_part=record.get("acknowledgedPart"),
            device_id=_identifier(record.get("deviceId")),
            target_device_id=_identifier(record.get("targetDeviceId")),
        )
    return TelemetryPayload(
        record=frozen,
        device_id=_identifier(record.get("deviceId")),
        target_device_id=_identifier(record.get("targetDeviceId")),
        timestamp=record.get("timestamp"),
    )


def derive_account_id(payload: ParsedPayload) -> str:
    """Partition key: targetDeviceId, then deviceId, then ``unknown_device``."""
    raw = (
        getattr(payload, "target_device_id", None)
        or getattr(payload, "device_id", None)
        or UNKNOWN_DEVICE
    )
    return sanitize_key(raw)


def is_epoch_number(value: Any) -> bool:
    """True for finite int/float timestamps (bool excluded)."""
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value)


@dataclass(frozen=True)
class LogEntry:
    """A persisted record of one accepted inbound message."""

    account_id: str
    topic: str
    received_at: int
    timestamp: Any
    qos: int
    retained: bool
    is_acknowledgement: bool
    is_schedule_component_update: bool
    fields: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def storage_timestamp(self) -> int:
        """Numeric timestamp used in the storage path."""
        if is_epoch_number(self.timestamp):
            return int(self.timestamp)
        return self.received_at

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the payload's passthrough fields; bridge fields win."""
        data = dict(self.fields)
        data.update(
            {
                "accountId": self.account_id,
                "topic": self.topic,
                "receivedAt": self.received_at,
                "timestamp": self.timestamp,
                "qos": self.qos,
                "retained": self.retained,
                "isAcknowledgement": self.is_acknowledgement,
                "isScheduleComponentUpdate": self.is_schedule_component_update,
            },
        )
        return data


def build_log_entry(
    message: InboundMessage,
    payload: ParsedPayload,
    account_id: str,
) -> LogEntry:
    """Merge passthrough fields with message metadata and derived flags."""
    timestamp = payload.record.get("timestamp")
    if timestamp is None:
        timestamp = message.received_at
    return LogEntry(
        account_id=account_id,
        topic=message.topic,
        received_at=message.received_at,
        timestamp=timestamp,
        qos=message.qos,
        retained=message.retained,
        is_acknowledgement=isinstance(payload, AcknowledgementPayload)
        and payload.acknowledges_config,
        is_schedule_component_update=isinstance(payload, CommandPayload)
        and payload.is_complete,
        fields=payload.record,
    )


def storage_path(entry: LogEntry, log_root: str = "user_mqtt_logs") -> str:
    """Deterministic path: ``<root>/<account>/<sanitized topic>/<timestamp>``."""
    root = log_root.strip("/")
    parts = [entry.account_id, sanitize_key(entry.topic), str(entry.storage_timestamp)]
    if root:
        parts.insert(0, root)
    return "/".join(parts)
