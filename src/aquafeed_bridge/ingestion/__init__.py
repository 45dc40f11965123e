"""Inbound message classification and persistence."""

from .models import (
    AcknowledgementPayload,
    CommandPayload,
    InboundMessage,
    LogEntry,
    ParsedPayload,
    TelemetryPayload,
    UnparseablePayload,
    derive_account_id,
    sanitize_key,
    storage_path,
)
from .pipeline import MessageIngestionPipeline, parse_payload

__all__ = [
    "AcknowledgementPayload",
    "CommandPayload",
    "InboundMessage",
    "LogEntry",
    "MessageIngestionPipeline",
    "ParsedPayload",
    "TelemetryPayload",
    "UnparseablePayload",
    "derive_account_id",
    "parse_payload",
    "sanitize_key",
    "storage_path",
]
