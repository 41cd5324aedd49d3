from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional

from typing_extensions import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_serializer

from .calculator import DailyDurationResult, MonthlySummary
from .controller import CommandResult
from .domain import TimeEntry
from .utils import format_duration


def _serialize_datetime(value: dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    else:
        value = value.astimezone(dt.timezone.utc)
    return value.isoformat()


class TimeEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: Optional[int]
    user_id: str
    kind: Literal["work", "break"]
    start_time: dt.datetime
    end_time: Optional[dt.datetime]
    day: dt.date
    is_manual: bool
    note: Optional[str]
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    @classmethod
    def from_entry(cls, entry: TimeEntry) -> "TimeEntryResponse":
        return cls(
            id=entry.id,
            user_id=entry.user_id,
            kind=entry.kind.value,
            start_time=entry.start_time,
            end_time=entry.end_time,
            day=entry.day,
            is_manual=entry.is_manual,
            note=entry.note,
            created_at=entry.created_at,
            updated_at=entry.updated_at,
        )

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "kind": self.kind,
            "start_time": _serialize_datetime(self.start_time),
            "end_time": _serialize_datetime(self.end_time) if self.end_time else None,
            "day": self.day.isoformat(),
            "is_manual": self.is_manual,
            "note": self.note,
            "created_at": _serialize_datetime(self.created_at) if self.created_at else None,
            "updated_at": _serialize_datetime(self.updated_at) if self.updated_at else None,
        }


class ManualEntryCreateRequest(BaseModel):
    day: dt.date
    kind: Literal["work", "break"] = "work"
    start_time: dt.datetime
    end_time: dt.datetime
    note: str


class TimeEntryUpdateRequest(BaseModel):
    start_time: Optional[dt.datetime] = None
    end_time: Optional[dt.datetime] = None
    kind: Optional[Literal["work", "break"]] = None
    day: Optional[dt.date] = None
    note: Optional[str] = None


class SessionCommandResponse(BaseModel):
    operation: str
    outcome: str
    state: str
    active_entry: Optional[TimeEntryResponse]
    closed_entry: Optional[TimeEntryResponse] = None

    @classmethod
    def from_result(cls, result: CommandResult) -> "SessionCommandResponse":
        return cls(
            operation=result.operation,
            outcome=result.outcome.value,
            state=result.state.value,
            active_entry=TimeEntryResponse.from_entry(result.active_entry) if result.active_entry else None,
            closed_entry=TimeEntryResponse.from_entry(result.closed_entry) if result.closed_entry else None,
        )


class SessionStatusResponse(BaseModel):
    day: dt.date
    state: str
    active_entry: Optional[TimeEntryResponse]
    total_work_seconds: int
    total_break_seconds: int
    active_elapsed_seconds: int


class UserProfilePayload(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    employment_type: Literal["employee", "full_time", "part_time", "intern", "contractor"] = "employee"
    holiday_region: str = ""
    weekly_hours: float = Field(default=40.0, gt=0, le=80)

    @field_validator("holiday_region", mode="before")
    @classmethod
    def _normalize_region(cls, value: Optional[str]) -> str:
        return (value or "").strip().lower()


class UserProfileResponse(UserProfilePayload):
    user_id: str
    region_class: str


class DailyDurationResponse(BaseModel):
    day: dt.date
    gross: int
    explicit_break: int
    gaps: int
    taken_break: int
    deducted_break: int
    net: int
    is_compliant: bool
    severity: Literal["none", "yellow", "orange", "red"]
    total_minutes: int
    net_display: str
    has_open_entry: bool = False

    @classmethod
    def from_result(cls, day: dt.date, result: DailyDurationResult, has_open_entry: bool = False) -> "DailyDurationResponse":
        return cls(
            day=day,
            gross=result.gross,
            explicit_break=result.explicit_break,
            gaps=result.gaps,
            taken_break=result.taken_break,
            deducted_break=result.deducted_break,
            net=result.net,
            is_compliant=result.is_compliant,
            severity=result.severity.value,
            total_minutes=result.total_minutes,
            net_display=format_duration(result.net),
            has_open_entry=has_open_entry,
        )


class MonthlySummaryResponse(BaseModel):
    year: int
    month: int
    gross: int
    net: int
    taken_break: int
    deducted_break: int
    non_compliant_days: int
    working_days: int
    target: int
    balance: int
    days: List[DailyDurationResponse] = Field(default_factory=list)

    @classmethod
    def from_summary(cls, summary: MonthlySummary, open_days: Optional[Dict[dt.date, bool]] = None) -> "MonthlySummaryResponse":
        open_days = open_days or {}
        return cls(
            year=summary.year,
            month=summary.month,
            gross=summary.gross,
            net=summary.net,
            taken_break=summary.taken_break,
            deducted_break=summary.deducted_break,
            non_compliant_days=summary.non_compliant_days,
            working_days=summary.working_days,
            target=summary.target,
            balance=summary.balance,
            days=[
                DailyDurationResponse.from_result(day, result, open_days.get(day, False))
                for day, result in sorted(summary.days.items())
            ],
        )
