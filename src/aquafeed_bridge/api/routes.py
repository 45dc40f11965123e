"""
MQTT, command and schedule endpoints for the AquaFeed bridge API.

Handlers run on Flask worker threads; every bridge call is submitted to the
bridge event loop through ``run`` and waited on with a timeout.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any

from aquafeed_bridge.exceptions import BridgeError

from .schemas import (
    CommandRecordSchema,
    PublishRequestSchema,
    ScheduleSchema,
    SubscribeRequestSchema,
)
from .validation import bridge_error_response, validate_json_request

if TYPE_CHECKING:
    from flask import Flask

    from aquafeed_bridge.mqtt.service import BridgeService

logger = logging.getLogger("aquafeed_bridge.api.routes")

RunCoroutine = Callable[[Coroutine[Any, Any, Any]], Any]


def format_publish_resource(request: Any) -> dict[str, Any]:
    """Format a published request as a JSON-API resource object."""
    return {
        "type": "mqtt-publish",
        "attributes": {
            "topic": request.topic,
            "qos": request.qos,
            "retain": request.retain,
        },
    }


def setup_mqtt_routes(app: Flask, service: BridgeService, run: RunCoroutine) -> None:
    """Register /api/mqtt/* endpoints."""

    @app.route("/api/mqtt/subscribe", methods=["POST"])
    @validate_json_request(SubscribeRequestSchema, allow_empty=True)
    def subscribe(validated_data: dict[str, Any]) -> Any:
        try:
            grants = run(service.subscribe(validated_data["topics"], validated_data["qos"]))
        except BridgeError as e:
            logger.error("Subscribe request failed: %s", e.message)
            return bridge_error_response(e)
        return {
            "data": {
                "type": "mqtt-subscription",
                "attributes": {"grants": [g.to_dict() for g in grants]},
            },
            "meta": {"all_granted": all(g.ok for g in grants)},
        }

    @app.route("/api/mqtt/publish", methods=["POST"])
    @validate_json_request(PublishRequestSchema)
    def publish(validated_data: dict[str, Any]) -> Any:
        try:
            request = run(
                service.publish_message(
                    validated_data["topic"],
                    validated_data["payload"],
                    validated_data["qos"],
                    validated_data["retain"],
                ),
            )
        except BridgeError as e:
            logger.error("Publish request failed: %s", e.message)
            return bridge_error_response(e)
        return {
            "data": format_publish_resource(request),
            "meta": {"message": f"Message published to MQTT topic {request.topic}."},
        }

    @app.route("/api/mqtt/status", methods=["GET"])
    def status() -> Any:
        return {
            "data": {
                "type": "mqtt-status",
                "id": "current",
                "attributes": service.status().to_dict(),
            },
        }


def setup_command_routes(app: Flask, service: BridgeService, run: RunCoroutine) -> None:
    """Register the per-device command endpoint."""

    @app.route("/api/commands/<device_id>", methods=["POST"])
    @validate_json_request(CommandRecordSchema)
    def publish_command(device_id: str, validated_data: dict[str, Any]) -> Any:
        try:
            request = run(service.publish_command(device_id, validated_data))
        except BridgeError as e:
            logger.error("Command for %s failed: %s", device_id, e.message)
            return bridge_error_response(e)
        resource = format_publish_resource(request)
        resource["id"] = device_id
        return {"data": resource}


def setup_schedule_routes(app: Flask, service: BridgeService, run: RunCoroutine) -> None:
    """Register schedule sync endpoints."""

    def sync_response(published: bool, enabled: bool, detailed: str) -> Any:
        body = {
            "data": {
                "type": "schedule-sync",
                "attributes": {
                    "enabled": enabled,
                    "detailedConfig": detailed,
                    "published": published,
                },
            },
        }
        return body, 200 if published else 502

    @app.route("/api/schedule", methods=["PUT"])
    @validate_json_request(ScheduleSchema)
    def sync_schedule(validated_data: Any) -> Any:
        detailed = service.schedule.detailed_config_for(validated_data)
        published = run(service.schedule.sync(validated_data))
        return sync_response(published, validated_data.enabled, detailed)

    @app.route("/api/schedule", methods=["DELETE"])
    def clear_schedule() -> Any:
        published = run(service.schedule.clear())
        return sync_response(published, False, "")
