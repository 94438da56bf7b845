"""Schedule expression parsing and fire-time arithmetic.

Every accepted expression resolves to a fixed positive interval, optionally
with an anchor that pins the grid (cron minute/hour fields, ``daily at``).
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from ..foundation.errors import SchedulerConfigError

# 1970-01-04 was a Sunday, which is weekday 0 in cron.
_CRON_EPOCH = datetime(1970, 1, 4)

_UNIT_SECONDS = {
    "s": 1, "sec": 1, "secs": 1, "second": 1, "seconds": 1,
    "m": 60, "min": 60, "mins": 60, "minute": 60, "minutes": 60,
    "h": 3600, "hr": 3600, "hrs": 3600, "hour": 3600, "hours": 3600,
    "d": 86400, "day": 86400, "days": 86400,
    "w": 604800, "week": 604800, "weeks": 604800,
}

_ALIASES = {
    "hourly": 3600, "@hourly": 3600,
    "daily": 86400, "@daily": 86400,
    "weekly": 604800, "@weekly": 604800,
}

_SHORT_RE = re.compile(r"^(\d+)\s*([a-z]+)$")
_EVERY_RE = re.compile(r"^every\s+(?:(\d+)\s+)?([a-z]+)$")
_DAILY_AT_RE = re.compile(r"^daily\s+at\s+(\d{1,2})(?::(\d{2}))?\s*(am|pm)?$")


@dataclass(frozen=True)
class Schedule:
    """A parsed schedule expression."""
    expression: str
    interval: timedelta
    anchor: Optional[datetime] = None

    def first_fire(self, now: datetime, start_at: Optional[datetime] = None) -> datetime:
        """First fire time at or after ``now``.

        Without an anchor the first run happens one interval from now.
        """
        anchor = start_at or self.anchor
        if anchor is None:
            return now + self.interval
        if anchor >= now:
            return anchor
        steps = -((anchor - now) // self.interval)
        return anchor + steps * self.interval

    def next_fire(self, previous: datetime, now: datetime) -> Tuple[datetime, int]:
        """Next fire time after ``previous`` on the same grid.

        Returns the fire time and the number of whole slots skipped because
        ``now`` is already past them.
        """
        candidate = previous + self.interval
        if candidate > now:
            return candidate, 0
        missed = (now - previous) // self.interval
        return previous + (missed + 1) * self.interval, missed

    def describe(self) -> str:
        return describe_interval(self.interval)


def describe_interval(interval: timedelta) -> str:
    """Human readable label, e.g. ``Every 5 minutes``."""
    seconds = int(interval.total_seconds())
    for unit, size in (("week", 604800), ("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds % size == 0:
            count = seconds // size
            return f"Every {unit}" if count == 1 else f"Every {count} {unit}s"
    return "Every second" if seconds == 1 else f"Every {seconds} seconds"


def parse_schedule(expression: str, plugin_id: Optional[str] = None) -> Schedule:
    """Resolve a schedule expression.

    Args:
        expression: ``30s``, ``5m``, ``300``, ``every 5 minutes``, ``hourly``,
            ``daily at 9:00 AM`` or a fixed-interval cron pattern
        plugin_id: Plugin the expression belongs to, for error reporting

    Returns:
        Parsed schedule

    Raises:
        SchedulerConfigError: If the expression does not describe a fixed
            positive interval
    """
    if not isinstance(expression, str) or not expression.strip():
        raise SchedulerConfigError("Schedule expression is empty", expression=expression, plugin_id=plugin_id)

    text = " ".join(expression.strip().lower().split())

    if len(text.split(" ")) == 5:
        interval, anchor = _parse_cron(text, expression, plugin_id)
        return Schedule(expression, interval, anchor)

    seconds: Optional[int] = None
    anchor = None

    if text.isdigit():
        seconds = int(text)
    elif text in _ALIASES:
        seconds = _ALIASES[text]
    else:
        match = _SHORT_RE.match(text) or _EVERY_RE.match(text)
        if match and match.group(2) in _UNIT_SECONDS:
            count = int(match.group(1)) if match.group(1) else 1
            seconds = count * _UNIT_SECONDS[match.group(2)]
        else:
            daily = _DAILY_AT_RE.match(text)
            if daily:
                seconds = 86400
                anchor = _daily_anchor(daily, expression, plugin_id)

    if seconds is None:
        raise SchedulerConfigError(
            f"Unsupported schedule expression: {expression!r}",
            expression=expression,
            plugin_id=plugin_id,
        )
    if seconds <= 0:
        raise SchedulerConfigError(
            f"Schedule must resolve to a positive interval: {expression!r}",
            expression=expression,
            plugin_id=plugin_id,
        )

    return Schedule(expression, timedelta(seconds=seconds), anchor)


def _daily_anchor(match: "re.Match[str]", expression: str, plugin_id: Optional[str]) -> datetime:
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = match.group(3)
    if meridiem:
        if not 1 <= hour <= 12:
            raise SchedulerConfigError(f"Invalid hour in {expression!r}", expression=expression, plugin_id=plugin_id)
        hour = hour % 12 + (12 if meridiem == "pm" else 0)
    if hour > 23 or minute > 59:
        raise SchedulerConfigError(f"Invalid time in {expression!r}", expression=expression, plugin_id=plugin_id)
    return _CRON_EPOCH + timedelta(hours=hour, minutes=minute)


def _cron_number(field: str, low: int, high: int) -> Optional[int]:
    if field.isdigit() and low <= int(field) <= high:
        return int(field)
    return None


def _cron_step(field: str) -> Optional[int]:
    if field.startswith("*/") and field[2:].isdigit():
        return int(field[2:])
    return None


def _parse_cron(text: str, expression: str, plugin_id: Optional[str]) -> Tuple[timedelta, datetime]:
    """Accept only cron patterns that fire at a fixed interval."""
    minute, hour, day_of_month, month, day_of_week = text.split(" ")

    def unsupported() -> SchedulerConfigError:
        return SchedulerConfigError(
            f"Cron pattern {expression!r} does not describe a fixed interval",
            expression=expression,
            plugin_id=plugin_id,
        )

    if day_of_month != "*" or month != "*":
        raise unsupported()

    minute_value = _cron_number(minute, 0, 59)
    minute_step = _cron_step(minute)

    if hour == "*" and day_of_week == "*":
        if minute == "*":
            return timedelta(minutes=1), _CRON_EPOCH
        if minute_step and 60 % minute_step == 0:
            return timedelta(minutes=minute_step), _CRON_EPOCH
        if minute_value is not None:
            return timedelta(hours=1), _CRON_EPOCH + timedelta(minutes=minute_value)
        raise unsupported()

    if minute_value is None:
        raise unsupported()

    hour_step = _cron_step(hour)
    if hour_step and 24 % hour_step == 0 and day_of_week == "*":
        return timedelta(hours=hour_step), _CRON_EPOCH + timedelta(minutes=minute_value)

    hour_value = _cron_number(hour, 0, 23)
    if hour_value is None:
        raise unsupported()
    offset = timedelta(hours=hour_value, minutes=minute_value)

    if day_of_week == "*":
        return timedelta(days=1), _CRON_EPOCH + offset

    weekday = _cron_number(day_of_week, 0, 7)
    if weekday is None:
        raise unsupported()
    return timedelta(weeks=1), _CRON_EPOCH + timedelta(days=weekday % 7) + offset
