"""Daily and monthly duration calculation.

Everything here is pure: callers pass the evaluation instant ``now``
explicitly, so an open entry contributes its live elapsed time and repeated
calls with the same inputs return identical results.
"""

from __future__ import annotations

import datetime as dt
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import policy
from .config import settings
from .domain import EntryKind, TimeEntry, UserProfile
from .policy import Severity
from .utils import floor_minutes, month_days, working_days_in_month

ZERO = dt.timedelta(0)


@dataclass(frozen=True, slots=True)
class DailyDurationResult:
    gross: int = 0
    explicit_break: int = 0
    gaps: int = 0
    taken_break: int = 0
    deducted_break: int = 0
    net: int = 0
    is_compliant: bool = True
    severity: Severity = Severity.NONE

    @property
    def work_minutes(self) -> int:
        return self.gross

    @property
    def break_minutes(self) -> int:
        return self.taken_break

    @property
    def total_minutes(self) -> int:
        return self.gross + self.taken_break


def _sum_durations(entries: Iterable[TimeEntry], now: dt.datetime) -> dt.timedelta:
    total = ZERO
    for entry in entries:
        total += entry.duration(now)
    return total


def implicit_gaps(work_entries: Iterable[TimeEntry]) -> dt.timedelta:
    """Time between consecutive closed work entries.

    Open entries never take part, and break entries are not consulted.
    """
    closed = sorted((e for e in work_entries if e.end_time is not None), key=lambda e: e.start_time)
    total = ZERO
    for current, following in zip(closed, closed[1:]):
        if following.start_time > current.end_time:
            total += following.start_time - current.end_time
    return total


def compute_daily(
    entries: Sequence[TimeEntry],
    profile: Optional[UserProfile],
    now: dt.datetime,
) -> DailyDurationResult:
    if not entries:
        return DailyDurationResult()

    work = [e for e in entries if e.kind is EntryKind.WORK]
    breaks = [e for e in entries if e.kind is EntryKind.BREAK]

    gross = floor_minutes(_sum_durations(work, now))
    explicit_break = floor_minutes(_sum_durations(breaks, now))
    gaps = floor_minutes(implicit_gaps(work))
    taken_break = explicit_break + gaps

    outcome = policy.evaluate(gross, taken_break, profile)
    return DailyDurationResult(
        gross=gross,
        explicit_break=explicit_break,
        gaps=gaps,
        taken_break=taken_break,
        deducted_break=outcome.deducted_break,
        net=gross - outcome.deducted_break,
        is_compliant=outcome.is_compliant,
        severity=outcome.severity,
    )


def closed_totals(entries: Iterable[TimeEntry]) -> Dict[EntryKind, dt.timedelta]:
    """Durations of closed entries per kind; open entries are left to the caller."""
    totals = {EntryKind.WORK: ZERO, EntryKind.BREAK: ZERO}
    for entry in entries:
        if entry.end_time is None:
            continue
        totals[entry.kind] += entry.duration(entry.end_time)
    return totals


def group_entries_by_day(entries: Iterable[TimeEntry]) -> Dict[dt.date, List[TimeEntry]]:
    grouped: Dict[dt.date, List[TimeEntry]] = defaultdict(list)
    for entry in entries:
        grouped[entry.day].append(entry)
    for day_entries in grouped.values():
        day_entries.sort(key=lambda e: e.start_time)
    return dict(grouped)


def day_time_range(entries: Sequence[TimeEntry]) -> Tuple[Optional[dt.datetime], Optional[dt.datetime]]:
    if not entries:
        return None, None
    first_start = min(e.start_time for e in entries)
    end_times = [e.end_time for e in entries if e.end_time is not None]
    return first_start, (max(end_times) if end_times else None)


def has_incomplete_entries(entries: Iterable[TimeEntry]) -> bool:
    return any(e.end_time is None for e in entries)


@dataclass(frozen=True, slots=True)
class MonthlySummary:
    year: int
    month: int
    days: Dict[dt.date, DailyDurationResult] = field(default_factory=dict)
    gross: int = 0
    net: int = 0
    taken_break: int = 0
    deducted_break: int = 0
    non_compliant_days: int = 0
    working_days: int = 0
    target: int = 0

    @property
    def balance(self) -> int:
        return self.net - self.target


def summarize_month(
    entries: Iterable[TimeEntry],
    profile: Optional[UserProfile],
    year: int,
    month: int,
    now: dt.datetime,
) -> MonthlySummary:
    grouped = group_entries_by_day(entries)
    days: Dict[dt.date, DailyDurationResult] = {}
    for day in month_days(year, month):
        day_entries = grouped.get(day)
        if day_entries:
            days[day] = compute_daily(day_entries, profile, now)

    working_days = working_days_in_month(year, month)
    daily_hours = profile.daily_hours if profile is not None else settings.default_weekly_hours / 5
    results = list(days.values())
    return MonthlySummary(
        year=year,
        month=month,
        days=days,
        gross=sum(r.gross for r in results),
        net=sum(r.net for r in results),
        taken_break=sum(r.taken_break for r in results),
        deducted_break=sum(r.deducted_break for r in results),
        non_compliant_days=sum(1 for r in results if not r.is_compliant),
        working_days=working_days,
        target=int(round(daily_hours * working_days * 60)),
    )
