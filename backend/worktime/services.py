from __future__ import annotations

import calendar
import datetime as dt
from typing import Dict, Optional, Tuple

from sqlalchemy.orm import Session

from .calculator import DailyDurationResult, MonthlySummary, compute_daily, has_incomplete_entries, summarize_month
from .config import settings
from .domain import EmploymentType, UserProfile
from .models import UserProfileRecord
from .repository import TimeEntryRepository
from .utils import utcnow


def default_profile() -> UserProfile:
    return UserProfile(
        employment_type=EmploymentType(settings.default_employment_type),
        holiday_region=settings.default_holiday_region,
        weekly_hours=settings.default_weekly_hours,
    )


def _to_profile(record: UserProfileRecord) -> UserProfile:
    return UserProfile(
        employment_type=EmploymentType(record.employment_type),
        holiday_region=record.holiday_region or "",
        weekly_hours=record.weekly_hours or settings.default_weekly_hours,
    )


def get_profile(db: Session, user_id: str) -> UserProfile:
    record = db.get(UserProfileRecord, user_id)
    if record is None:
        return default_profile()
    return _to_profile(record)


def save_profile(db: Session, user_id: str, employment_type: str, holiday_region: str, weekly_hours: float) -> UserProfile:
    record = db.get(UserProfileRecord, user_id) or UserProfileRecord(user_id=user_id)
    record.employment_type = EmploymentType(employment_type).value
    record.holiday_region = (holiday_region or "").strip().lower()
    record.weekly_hours = weekly_hours
    record.updated_at = utcnow()
    db.add(record)
    db.commit()
    db.refresh(record)
    return _to_profile(record)


async def day_duration(
    repository: TimeEntryRepository,
    user_id: str,
    day: dt.date,
    profile: Optional[UserProfile],
    now: dt.datetime,
) -> Tuple[DailyDurationResult, bool]:
    entries = await repository.list_for_day(user_id, day)
    return compute_daily(entries, profile, now), has_incomplete_entries(entries)


async def month_summary(
    repository: TimeEntryRepository,
    user_id: str,
    year: int,
    month: int,
    profile: Optional[UserProfile],
    now: dt.datetime,
) -> Tuple[MonthlySummary, Dict[dt.date, bool]]:
    _, last = calendar.monthrange(year, month)
    entries = await repository.list_for_range(user_id, dt.date(year, month, 1), dt.date(year, month, last))
    open_days: Dict[dt.date, bool] = {}
    for entry in entries:
        if entry.is_open:
            open_days[entry.day] = True
    return summarize_month(entries, profile, year, month, now), open_days
