from __future__ import annotations

import calendar
import datetime as dt
from typing import Iterator, Optional

from zoneinfo import ZoneInfo

from .config import settings

UTC = dt.timezone.utc
LOCAL_TZ = ZoneInfo(settings.timezone)


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


def ensure_utc(value: dt.datetime) -> dt.datetime:
    """Naive values are read as local wall-clock time."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=LOCAL_TZ)
    return value.astimezone(UTC)


def from_db_datetime(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def local_day(instant: dt.datetime) -> dt.date:
    return ensure_utc(instant).astimezone(LOCAL_TZ).date()


def to_epoch_ms(value: dt.datetime) -> int:
    return int(ensure_utc(value).timestamp() * 1000)


def from_epoch_ms(value: int) -> dt.datetime:
    return dt.datetime.fromtimestamp(value / 1000, tz=UTC)


def floor_minutes(delta: dt.timedelta) -> int:
    if delta <= dt.timedelta(0):
        return 0
    return int(delta // dt.timedelta(minutes=1))


def month_days(year: int, month: int) -> Iterator[dt.date]:
    _, last = calendar.monthrange(year, month)
    for number in range(1, last + 1):
        yield dt.date(year, month, number)


def is_working_day(day: dt.date) -> bool:
    return day.weekday() < 5


def working_days_in_month(year: int, month: int) -> int:
    return sum(1 for day in month_days(year, month) if is_working_day(day))


def format_duration(minutes: int, locale: str = "en") -> str:
    """Render minutes as ``8h 15m`` (or ``8 Std 15 Min`` for German)."""
    hours, mins = divmod(max(minutes, 0), 60)
    if locale.lower().startswith("de"):
        hour_unit, minute_unit = " Std", " Min"
    else:
        hour_unit, minute_unit = "h", "m"
    if hours == 0:
        return f"{mins}{minute_unit}"
    if mins == 0:
        return f"{hours}{hour_unit}"
    return f"{hours}{hour_unit} {mins}{minute_unit}"
