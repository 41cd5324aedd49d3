"""Immutable domain types shared by the controller, calculator and repository."""

from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple, Union


class EntryKind(str, enum.Enum):
    WORK = "work"
    BREAK = "break"

    @property
    def opposite(self) -> "EntryKind":
        return EntryKind.BREAK if self is EntryKind.WORK else EntryKind.WORK


class SessionState(str, enum.Enum):
    IDLE = "idle"
    WORKING = "working"
    ON_BREAK = "on_break"


class EmploymentType(str, enum.Enum):
    EMPLOYEE = "employee"
    FULL_TIME = "full_time"
    PART_TIME = "part_time"
    INTERN = "intern"
    CONTRACTOR = "contractor"


class RegionClass(str, enum.Enum):
    """Closed set of rule tables a profile can resolve to."""

    CONTRACTOR = "contractor"
    GERMANY = "germany"
    UK = "uk"
    DEFAULT = "default"


@dataclass(frozen=True, slots=True)
class Pending:
    """Identity of an entry whose create has not been acknowledged yet."""

    local_handle: str


@dataclass(frozen=True, slots=True)
class Confirmed:
    """Identity assigned by the repository."""

    id: int


Handle = Union[Pending, Confirmed]


@dataclass(frozen=True, slots=True)
class EntryDraft:
    """Everything needed to create an entry except its identifier."""

    user_id: str
    kind: EntryKind
    start_time: dt.datetime
    day: dt.date
    end_time: Optional[dt.datetime] = None
    is_manual: bool = False
    note: Optional[str] = None
    created_at: Optional[dt.datetime] = None


@dataclass(frozen=True, slots=True)
class TimeEntry:
    handle: Handle
    user_id: str
    kind: EntryKind
    start_time: dt.datetime
    day: dt.date
    end_time: Optional[dt.datetime] = None
    is_manual: bool = False
    note: Optional[str] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    @property
    def id(self) -> Optional[int]:
        if isinstance(self.handle, Confirmed):
            return self.handle.id
        return None

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def is_pending(self) -> bool:
        return isinstance(self.handle, Pending)

    def duration(self, now: dt.datetime) -> dt.timedelta:
        """Elapsed time, measured against ``now`` while the entry is open.

        Inverted intervals never produce negative time.
        """
        end = self.end_time if self.end_time is not None else now
        delta = end - self.start_time
        if delta < dt.timedelta(0):
            return dt.timedelta(0)
        return delta

    def closed_at(self, end_time: dt.datetime) -> "TimeEntry":
        return replace(self, end_time=end_time, updated_at=end_time)

    def confirmed_as(self, entry_id: int) -> "TimeEntry":
        return replace(self, handle=Confirmed(entry_id))

    @classmethod
    def from_draft(cls, handle: Handle, draft: EntryDraft) -> "TimeEntry":
        return cls(
            handle=handle,
            user_id=draft.user_id,
            kind=draft.kind,
            start_time=draft.start_time,
            day=draft.day,
            end_time=draft.end_time,
            is_manual=draft.is_manual,
            note=draft.note,
            created_at=draft.created_at,
        )


Snapshot = Tuple[TimeEntry, ...]


def resolve_region_class(employment_type: EmploymentType, holiday_region: Optional[str]) -> RegionClass:
    if employment_type is EmploymentType.CONTRACTOR:
        return RegionClass.CONTRACTOR
    region = (holiday_region or "").strip().lower()
    if region.startswith("de-"):
        return RegionClass.GERMANY
    if region == "en-uk":
        return RegionClass.UK
    return RegionClass.DEFAULT


@dataclass(frozen=True, slots=True)
class UserProfile:
    """Employment and region data that select the compliance rules.

    The region class is resolved once here so nothing downstream has to
    inspect region strings again.
    """

    employment_type: EmploymentType = EmploymentType.EMPLOYEE
    holiday_region: str = ""
    weekly_hours: float = 40.0
    region_class: RegionClass = field(init=False)

    def __post_init__(self) -> None:
        employment_type = EmploymentType(self.employment_type)
        object.__setattr__(self, "employment_type", employment_type)
        object.__setattr__(self, "holiday_region", (self.holiday_region or "").strip().lower())
        object.__setattr__(self, "region_class", resolve_region_class(employment_type, self.holiday_region))

    @property
    def daily_hours(self) -> float:
        return self.weekly_hours / 5


__all__ = [
    "Confirmed",
    "EmploymentType",
    "EntryDraft",
    "EntryKind",
    "Handle",
    "Pending",
    "RegionClass",
    "SessionState",
    "Snapshot",
    "TimeEntry",
    "UserProfile",
    "resolve_region_class",
]
