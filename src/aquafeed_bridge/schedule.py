"""
Feeding schedule synchronisation.

The feeder firmware reads two retained plain-text topics:

- ``iot/schedule/enabled``: ``"true"`` or ``"false"``
- ``iot/schedule/detailed_config``: ``"HH:MM,<amount>g;HH:MM,<amount>g"``,
  or an empty string when the schedule is off

A schedule is entered as the first meal time, the total daily amount and a
frequency; feedings are spread evenly over 24 hours.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .mqtt.publisher import PublishGateway
    from .mqtt.topics import AquaFeedTopics

logger = logging.getLogger("aquafeed_bridge.schedule")

SCHEDULE_QOS = 1
SCHEDULE_RETAIN = True

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
_AMOUNT_RE = re.compile(r"g$", re.IGNORECASE)


class FeedingFrequency(Enum):
    """How many times per day the feeder runs."""

    ONCE = "Once a day"
    TWICE = "Twice a day"
    THRICE = "Thrice a day"

    @property
    def feedings_per_day(self) -> int:
        return {"Once a day": 1, "Twice a day": 2, "Thrice a day": 3}[self.value]


@dataclass(frozen=True)
class Feeding:
    """One calculated feeding."""

    time: str
    amount: str


@dataclass(frozen=True)
class FeedingSchedule:
    """A schedule as entered by the user."""

    first_meal: str
    total_amount: str
    frequency: FeedingFrequency
    enabled: bool = True


def parse_meal_time(value: str) -> tuple[int, int]:
    """
    Parse ``HH:MM``.

    Raises:
        ValueError: If the value is not a valid 24-hour time.
    """
    match = _TIME_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid meal time {value!r}, expected HH:MM")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError(f"Invalid meal time {value!r}, expected HH:MM")
    return hours, minutes


def parse_amount(value: str) -> float | None:
    """Parse ``"15g"`` or ``"15"``; None when not a positive number."""
    try:
        amount = float(_AMOUNT_RE.sub("", value.strip()))
    except ValueError:
        return None
    if not math.isfinite(amount) or amount <= 0:
        return None
    return amount


def format_amount(grams: float) -> str:
    """Round to two decimals and drop trailing zeros: 7.5 -> ``7.5g``, 5.0 -> ``5g``."""
    text = f"{round(grams, 2):.2f}".rstrip("0").rstrip(".")
    return f"{text}g"


def calculate_feedings(
    first_meal: str,
    total_amount: str,
    frequency: FeedingFrequency,
) -> list[Feeding]:
    """
    Spread the total daily amount evenly over the day.

    Returns an empty list when the amount is not a positive number.
    """
    hours, minutes = parse_meal_time(first_meal)
    total = parse_amount(total_amount)
    if total is None:
        return []

    count = frequency.feedings_per_day
    interval_minutes = 24 * 60 // count
    amount = format_amount(total / count)
    start = hours * 60 + minutes

    feedings = []
    for i in range(count):
        at = (start + i * interval_minutes) % (24 * 60)
        feedings.append(Feeding(time=f"{at // 60:02d}:{at % 60:02d}", amount=amount))
    return feedings


def format_detailed_config(feedings: list[Feeding]) -> str:
    """Render feedings as ``HH:MM,<amount>;...``."""
    return ";".join(f"{f.time},{f.amount}" for f in feedings)


class ScheduleSync:
    """Publish schedule state to the feeder topics."""

    def __init__(self, gateway: PublishGateway, topics: AquaFeedTopics) -> None:
        self.gateway = gateway
        self.topics = topics

    def detailed_config_for(self, schedule: FeedingSchedule) -> str:
        """Payload for the detailed config topic; empty when disabled."""
        if not schedule.enabled:
            return ""
        return format_detailed_config(
            calculate_feedings(schedule.first_meal, schedule.total_amount, schedule.frequency),
        )

    async def sync(self, schedule: FeedingSchedule) -> bool:
        """
        Publish the enabled flag, then the detailed config.

        Returns:
            True if both publishes succeeded.
        """
        detailed = self.detailed_config_for(schedule)
        return await self._publish_pair(schedule.enabled, detailed)

    async def clear(self) -> bool:
        """Disable the schedule on the device and blank its config."""
        return await self._publish_pair(False, "")

    async def _publish_pair(self, enabled: bool, detailed: str) -> bool:
        enabled_ok = await self.gateway.publish(
            self.topics.schedule_enabled(),
            "true" if enabled else "false",
            qos=SCHEDULE_QOS,
            retain=SCHEDULE_RETAIN,
        )
        detailed_ok = await self.gateway.publish(
            self.topics.schedule_detailed_config(),
            detailed,
            qos=SCHEDULE_QOS,
            retain=SCHEDULE_RETAIN,
        )
        success = enabled_ok and detailed_ok
        if success:
            logger.info("Schedule synced: enabled=%s detailed=%r", enabled, detailed)
        else:
            logger.warning(
                "Partial schedule sync: enabled published=%s, detailed published=%s",
                enabled_ok,
                detailed_ok,
            )
        return success
