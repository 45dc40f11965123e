"""Exception classes for the AquaFeed MQTT bridge."""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base exception class for bridge errors."""

    ERROR_CODE = 0

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize BridgeError with message and context."""
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.error_code = self.ERROR_CODE

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/diagnostics."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class ConfigurationError(BridgeError):
    """Raised when required broker settings are absent or invalid."""

    ERROR_CODE = 2001

    def __init__(self, message: str, missing_fields: list[str] | None = None) -> None:
        """Initialize ConfigurationError with the offending fields."""
        super().__init__(message, {"missing_fields": missing_fields or []})
        self.missing_fields = missing_fields or []


class BridgeConnectionError(BridgeError):
    """Raised when a broker session cannot be acquired."""

    ERROR_CODE = 2002

    def __init__(
        self,
        message: str,
        broker: str = "",
        port: int = 0,
    ) -> None:
        """Initialize BridgeConnectionError with broker details."""
        super().__init__(message, {"broker": broker, "port": port})
        self.broker = broker
        self.port = port


class SubscribeError(BridgeError):
    """Raised when the subscribe batch cannot be issued."""

    ERROR_CODE = 2003

    def __init__(self, message: str, topics: list[str] | None = None) -> None:
        """Initialize SubscribeError with the requested topics."""
        super().__init__(message, {"topics": topics or []})
        self.topics = topics or []


class PublishError(BridgeError):
    """Raised when an outbound publish fails."""

    ERROR_CODE = 2004

    def __init__(self, message: str, topic: str = "") -> None:
        """Initialize PublishError with the target topic."""
        super().__init__(message, {"topic": topic})
        self.topic = topic


class PayloadParseError(BridgeError):
    """Raised when an inbound payload is not a structured record."""

    ERROR_CODE = 2005

    def __init__(self, message: str, topic: str = "", raw_payload: bytes = b"") -> None:
        """Initialize PayloadParseError with the raw payload."""
        super().__init__(
            message,
            {"topic": topic, "raw_payload": raw_payload.decode("utf-8", "replace")},
        )
        self.topic = topic
        self.raw_payload = raw_payload


class PayloadValidationError(BridgeError):
    """Raised when a classified payload lacks a required field."""

    ERROR_CODE = 2006

    def __init__(self, message: str, topic: str = "", field: str | None = None) -> None:
        """Initialize PayloadValidationError with the offending field."""
        super().__init__(message, {"topic": topic, "field": field})
        self.topic = topic
        self.field = field


class PersistenceError(BridgeError):
    """Raised when a log entry cannot be written to the sink."""

    ERROR_CODE = 2007

    def __init__(self, message: str, path: str = "") -> None:
        """Initialize PersistenceError with the storage path."""
        super().__init__(message, {"path": path})
        self.path = path
