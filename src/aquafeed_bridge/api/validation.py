"""
Request validation and error handling for the AquaFeed bridge API.

Errors are returned in JSON-API format:
``{"errors": [{"id", "status", "title", "detail", "code"?, "source"?}]}``.
"""

from __future__ import annotations

import logging
import uuid
from functools import wraps
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

from flask import request
from marshmallow import Schema, ValidationError

from aquafeed_bridge.exceptions import (
    BridgeConnectionError,
    BridgeError,
    ConfigurationError,
    PayloadValidationError,
    PublishError,
    SubscribeError,
)

logger = logging.getLogger("aquafeed_bridge.api.validation")


class APIError(Exception):
    """General API error exception."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str | None = None,
        source: dict[str, Any] | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize APIError.

        Args:
            message: Error message
            status_code: HTTP status code
            error_code: Application-specific error code
            source: Error source information
            meta: Additional error metadata
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.source = source
        self.meta = meta


def format_validation_errors(
    errors: dict[str, Any] | list[str],
) -> list[dict[str, Any]]:
    """
    Format marshmallow validation errors into JSON-API error format.

    Args:
        errors: Marshmallow validation errors

    Returns:
        List of formatted error objects
    """
    formatted_errors: list[dict[str, Any]] = []

    def add(message: Any, pointer: str | None) -> None:
        error: dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "status": "400",
            "code": "VALIDATION_ERROR",
            "title": "Validation Error",
            "detail": str(message),
        }
        if pointer:
            error["source"] = {"pointer": pointer}
        formatted_errors.append(error)

    if isinstance(errors, list):
        for message in errors:
            add(message, None)
        return formatted_errors

    def process_errors(error_dict: dict[str, Any], path_prefix: str = "") -> None:
        """Recursively process nested error dictionaries."""
        for field_path, messages in error_dict.items():
            full_path = f"{path_prefix}/{field_path}" if path_prefix else str(field_path)
            pointer = None if field_path == "_schema" else f"/{full_path}"
            if isinstance(messages, dict):
                process_errors(messages, full_path)
            elif isinstance(messages, list):
                for message in messages:
                    add(message, pointer)
            else:
                add(messages, pointer)

    process_errors(errors)
    return formatted_errors


def format_error_response(
    message: str,
    status_code: int = 400,
    error_code: str | None = None,
    source: dict[str, Any] | None = None,
    meta: dict[str, Any] | None = None,
) -> tuple[dict[str, Any], int]:
    """
    Format a single error into JSON-API error response.

    Returns:
        Tuple of (error response dict, status code)
    """
    error: dict[str, Any] = {
        "id": str(uuid.uuid4()),
        "status": str(status_code),
        "title": get_error_title(status_code),
        "detail": message,
    }

    if error_code:
        error["code"] = error_code
    if source:
        error["source"] = source
    if meta:
        error["meta"] = meta

    return {"errors": [error]}, status_code


def get_error_title(status_code: int) -> str:
    """Get appropriate error title for HTTP status code."""
    titles = {
        400: "Bad Request",
        404: "Not Found",
        405: "Method Not Allowed",
        415: "Unsupported Media Type",
        500: "Internal Server Error",
        502: "Bad Gateway",
        503: "Service Unavailable",
        504: "Gateway Timeout",
    }
    return titles.get(status_code, "Error")


def bridge_error_response(error: BridgeError) -> tuple[dict[str, Any], int]:
    """
    Map a bridge exception onto an HTTP error response.

    No broker session -> 503, broker refused -> 502, bad input -> 400.
    """
    if isinstance(error, PayloadValidationError):
        return format_error_response(
            error.message,
            400,
            "INVALID_COMMAND",
            source={"pointer": f"/{error.field}"} if error.field else None,
        )
    if isinstance(error.__cause__, BridgeConnectionError) or isinstance(
        error,
        BridgeConnectionError,
    ):
        return format_error_response(error.message, 503, "MQTT_UNAVAILABLE")
    if isinstance(error, PublishError):
        return format_error_response(
            error.message,
            502,
            "PUBLISH_FAILED",
            meta={"topic": error.topic},
        )
    if isinstance(error, SubscribeError):
        return format_error_response(
            error.message,
            502,
            "SUBSCRIBE_FAILED",
            meta={"topics": error.topics},
        )
    if isinstance(error, ConfigurationError):
        return format_error_response(error.message, 500, "CONFIGURATION_ERROR")
    return format_error_response(error.message, 500, "BRIDGE_ERROR")


def validate_json_request(schema: type[Schema], *, allow_empty: bool = False) -> Callable:
    """
    Validate JSON request body using marshmallow schema.

    Args:
        schema: Marshmallow schema class for validation
        allow_empty: Treat a missing body as ``{}``

    Returns:
        Decorator function
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            request_data = request.get_json(silent=True)
            if request_data is None:
                if not allow_empty or request.get_data():
                    return format_error_response(
                        "Request body must contain valid JSON data",
                        400,
                        "INVALID_JSON",
                    )
                request_data = {}

            try:
                validated_data = schema().load(request_data)
            except ValidationError as e:
                logger.warning("Validation error: %s", e.messages)
                return {"errors": format_validation_errors(e.messages)}, 400

            kwargs["validated_data"] = validated_data
            return func(*args, **kwargs)

        return wrapper

    return decorator
