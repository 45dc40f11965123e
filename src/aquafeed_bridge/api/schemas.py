"""
Marshmallow schemas for AquaFeed bridge API request validation.
"""

from __future__ import annotations

from typing import Any

from marshmallow import (
    INCLUDE,
    Schema,
    ValidationError,
    fields,
    post_load,
    validate,
    validates_schema,
)

from aquafeed_bridge.mqtt.service import has_command_content
from aquafeed_bridge.mqtt.topics import validate_publish_topic, validate_topic_filter
from aquafeed_bridge.schedule import FeedingFrequency, FeedingSchedule, parse_amount, parse_meal_time

QOS_LEVELS = [0, 1, 2]


def _publish_topic(value: str) -> None:
    if not validate_publish_topic(value):
        raise ValidationError("Topic must be non-empty and must not contain wildcards")


def _topic_filter(value: str) -> None:
    if not validate_topic_filter(value):
        raise ValidationError(f"Invalid topic filter: {value!r}")


def _meal_time(value: str) -> None:
    try:
        parse_meal_time(value)
    except ValueError as e:
        raise ValidationError(str(e)) from e


def _amount(value: str) -> None:
    if parse_amount(value) is None:
        raise ValidationError("Amount must be a positive number of grams, e.g. '15g'")


class SubscribeRequestSchema(Schema):
    """Schema for subscribe requests; omitted topics mean the configured set."""

    topics = fields.List(
        fields.Str(validate=_topic_filter),
        load_default=None,
        metadata={"description": "Topic filters to subscribe to"},
    )
    qos = fields.Int(
        load_default=None,
        validate=validate.OneOf(QOS_LEVELS),
        metadata={"description": "Requested QoS for every topic"},
    )


class PublishRequestSchema(Schema):
    """Schema for publishing a JSON object to a topic."""

    topic = fields.Str(required=True, validate=_publish_topic)
    payload = fields.Dict(
        required=True,
        metadata={"description": "JSON object sent as the message body"},
    )
    qos = fields.Int(load_default=None, validate=validate.OneOf(QOS_LEVELS))
    retain = fields.Bool(load_default=None)


class CommandRecordSchema(Schema):
    """
    Schema for a command record addressed to one device.

    Unknown keys are kept and published as part of the payload.
    """

    class Meta:
        unknown = INCLUDE

    topic = fields.Str(validate=_publish_topic)
    qos = fields.Int(validate=validate.OneOf(QOS_LEVELS))
    retain = fields.Bool()
    targetDeviceId = fields.Str(validate=validate.Length(min=1))  # noqa: N815

    @validates_schema
    def validate_command_content(self, data: dict[str, Any], **_kwargs: Any) -> None:
        """Require command, schedule, or part with value."""
        if not has_command_content(data):
            raise ValidationError(
                "Record must contain 'command', 'schedule', or 'part' with 'value'",
            )


class ScheduleSchema(Schema):
    """Schema for a feeding schedule."""

    time = fields.Str(
        required=True,
        validate=_meal_time,
        metadata={"description": "First meal time, HH:MM"},
    )
    amount = fields.Str(
        required=True,
        validate=_amount,
        metadata={"description": "Total daily amount, e.g. '15g'"},
    )
    frequency = fields.Str(
        required=True,
        validate=validate.OneOf([f.value for f in FeedingFrequency]),
    )
    enabled = fields.Bool(load_default=True)

    @post_load
    def make_schedule(self, data: dict[str, Any], **_kwargs: Any) -> FeedingSchedule:
        """Build the schedule object."""
        return FeedingSchedule(
            first_meal=data["time"],
            total_amount=data["amount"],
            frequency=FeedingFrequency(data["frequency"]),
            enabled=data["enabled"],
        )
