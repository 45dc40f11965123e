"""
MQTT topic structure and helper functions for the AquaFeed bridge.

Topics used by the feeder firmware:
- iot/schedule/enabled             # "true" / "false", retained
- iot/schedule/detailed_config     # "HH:MM,<amount>g;..." or "", retained
- <default publish topic>/<device> # JSON commands from database triggers
"""

from __future__ import annotations

from dataclasses import dataclass

SCHEDULE_PREFIX = "iot/schedule"


@dataclass
class TopicInfo:
    """Information about an MQTT topic."""

    pattern: str
    description: str
    qos: int
    retain: bool
    example: str


class AquaFeedTopics:
    """Topic construction and validation for the feeder command namespace."""

    def __init__(
        self,
        default_publish_topic: str = "iot/commands/default",
        schedule_prefix: str = SCHEDULE_PREFIX,
    ) -> None:
        """
        Initialize topic helper.

        Args:
            default_publish_topic: Base topic for per-device commands.
            schedule_prefix: Namespace of the plain-text schedule topics.
        """
        self.default_publish_topic = default_publish_topic.rstrip("/")
        self.schedule_prefix = schedule_prefix.rstrip("/")
        self._topic_patterns = {
            "schedule_enabled": TopicInfo(
                pattern=f"{self.schedule_prefix}/enabled",
                description="Whether the feeding schedule is active",
                qos=1,
                retain=True,
                example="true",
            ),
            "schedule_detailed_config": TopicInfo(
                pattern=f"{self.schedule_prefix}/detailed_config",
                description="Feeding times and amounts",
                qos=1,
                retain=True,
                example="08:00,7.5g;20:00,7.5g",
            ),
            "device_command": TopicInfo(
                pattern=f"{self.default_publish_topic}/{{device_id}}",
                description="JSON command for one device",
                qos=1,
                retain=False,
                example=f"{self.default_publish_topic}/feeder-01",
            ),
        }

    def schedule_enabled(self) -> str:
        """Get the schedule enabled flag topic."""
        return self._topic_patterns["schedule_enabled"].pattern

    def schedule_detailed_config(self) -> str:
        """Get the detailed schedule topic."""
        return self._topic_patterns["schedule_detailed_config"].pattern

    def device_command(self, device_id: str) -> str:
        """Get the command topic for one device."""
        return f"{self.default_publish_topic}/{device_id}"

    def is_schedule_topic(self, topic: str) -> bool:
        """Check if topic belongs to the plain-text schedule namespace."""
        return topic.startswith(f"{self.schedule_prefix}/")

    def get_topic_info(self, topic_type: str) -> TopicInfo | None:
        """Get topic information for a specific topic type."""
        return self._topic_patterns.get(topic_type)

    def list_all_patterns(self) -> dict[str, TopicInfo]:
        """Get all topic patterns and their information."""
        return self._topic_patterns.copy()


def validate_topic_filter(topic: str) -> bool:
    """Check a subscription filter: ``+`` fills a level, ``#`` only at the end."""
    if not topic or "\x00" in topic:
        return False
    levels = topic.split("/")
    for i, level in enumerate(levels):
        if "#" in level and (level != "#" or i != len(levels) - 1):
            return False
        if "+" in level and level != "+":
            return False
    return True


def validate_publish_topic(topic: str) -> bool:
    """Check a publish topic: non-empty and free of wildcards."""
    return bool(topic) and "\x00" not in topic and not any(c in topic for c in "+#")
