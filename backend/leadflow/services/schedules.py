"""Due times for ``scheduled_trigger`` automations.

The trigger config carries the editor's schedule settings, all read in UTC:

- ``schedule``: ``hourly``, ``daily`` (default), ``weekly`` or ``monthly``
- ``time``: ``HH:MM``, default ``09:00``; hourly schedules only use the minutes
- ``day``: weekday name for weekly schedules, default ``monday``
- ``date``: day of month for monthly schedules, default 1, clamped to the month's length
"""

import calendar
from datetime import datetime, timedelta
from typing import Any, Mapping, NamedTuple

from leadflow.errors import ConfigurationError

SCHEDULES = ("hourly", "daily", "weekly", "monthly")
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class Schedule(NamedTuple):
    kind: str
    hour: int
    minute: int
    weekday: int
    date: int


def parse_schedule(config: Mapping[str, Any]) -> Schedule:
    kind = str(config.get("schedule") or "daily").strip().lower()
    if kind not in SCHEDULES:
        raise ConfigurationError(f"Unknown schedule '{kind}'", details={"allowed": list(SCHEDULES)})

    time_value = str(config.get("time") or "09:00").strip()
    try:
        hour_text, minute_text = time_value.split(":")[:2]
        hour, minute = int(hour_text), int(minute_text)
    except ValueError:
        raise ConfigurationError(f"Schedule time '{time_value}' is not HH:MM")
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ConfigurationError(f"Schedule time '{time_value}' is out of range")

    day = str(config.get("day") or "monday").strip().lower()
    if day not in WEEKDAYS:
        raise ConfigurationError(f"Unknown weekday '{day}'")

    try:
        date = int(config.get("date") or 1)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Day of month '{config.get('date')}' is not a number")
    if not 1 <= date <= 31:
        raise ConfigurationError(f"Day of month {date} is out of range")

    return Schedule(kind, hour, minute, WEEKDAYS.index(day), date)


def _monthly_slot(year: int, month: int, schedule: Schedule, now: datetime) -> datetime:
    day = min(schedule.date, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day, hour=schedule.hour, minute=schedule.minute,
                       second=0, microsecond=0)


def latest_slot(config: Mapping[str, Any], now: datetime) -> datetime:
    """The most recent time at or before ``now`` when the schedule fires."""
    schedule = parse_schedule(config)

    if schedule.kind == "hourly":
        slot = now.replace(minute=schedule.minute, second=0, microsecond=0)
        return slot if slot <= now else slot - timedelta(hours=1)

    if schedule.kind == "monthly":
        slot = _monthly_slot(now.year, now.month, schedule, now)
        if slot <= now:
            return slot
        year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
        return _monthly_slot(year, month, schedule, now)

    slot = now.replace(hour=schedule.hour, minute=schedule.minute, second=0, microsecond=0)
    if schedule.kind == "daily":
        return slot if slot <= now else slot - timedelta(days=1)

    slot -= timedelta(days=(now.weekday() - schedule.weekday) % 7)
    return slot if slot <= now else slot - timedelta(days=7)
