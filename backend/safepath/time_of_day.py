from __future__ import annotations

from datetime import UTC, datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import SafePathError
from .models import TimeOfDay
from .settings import settings

TIME_OF_DAY_VALUES: tuple[TimeOfDay, ...] = ("day", "night", "morning-rush", "evening-rush")

# Contexts in which street lighting is irrelevant to the score.
DAYLIGHT_CONTEXTS: frozenset[str] = frozenset({"day", "morning-rush", "evening-rush"})

_NIGHT_START = time(22, 0)
_NIGHT_END = time(6, 0)
_MORNING_RUSH = (time(7, 0), time(9, 30))
_EVENING_RUSH = (time(16, 30), time(19, 0))


def _local_zone(name: str | None = None) -> ZoneInfo:
    try:
        return ZoneInfo(name or settings.local_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def time_of_day_for(local_time: time) -> TimeOfDay:
    """Bucket a local wall-clock time.

    Bands: night 22:00-06:00, morning-rush 07:00-09:30, evening-rush
    16:30-19:00, day otherwise. Band starts are inclusive, ends exclusive.
    """
    t = local_time.replace(tzinfo=None)
    if t >= _NIGHT_START or t < _NIGHT_END:
        return "night"
    if _MORNING_RUSH[0] <= t < _MORNING_RUSH[1]:
        return "morning-rush"
    if _EVENING_RUSH[0] <= t < _EVENING_RUSH[1]:
        return "evening-rush"
    return "day"


def detect_time_of_day(now: datetime | None = None, *, tz_name: str | None = None) -> TimeOfDay:
    current = now if now is not None else datetime.now(UTC)
    if current.tzinfo is None:
        current = current.replace(tzinfo=UTC)
    return time_of_day_for(current.astimezone(_local_zone(tz_name)).time())


def parse_time_of_day(value: str | None, *, now: datetime | None = None) -> TimeOfDay:
    """Validate an explicit bucket, or detect one from the clock when omitted."""
    if value is None or not str(value).strip():
        return detect_time_of_day(now)
    cleaned = str(value).strip().lower().replace("_", "-")
    for candidate in TIME_OF_DAY_VALUES:
        if candidate == cleaned:
            return candidate
    raise SafePathError(
        reason_code="invalid_time_of_day",
        message=f"timeOfDay must be one of {', '.join(TIME_OF_DAY_VALUES)}",
        details={"value": value},
    )


def is_daylight(time_of_day: str) -> bool:
    return time_of_day in DAYLIGHT_CONTEXTS
