"""Work/break session state machine for a single user's current day.

The controller keeps the latest repository snapshot and, while a command is
in flight, an optimistic delta on top of it. Everything it reports
(state, active entry, totals) is derived from those two values.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import enum
import logging
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

from .calculator import closed_totals
from .domain import (
    EntryDraft,
    EntryKind,
    Pending,
    SessionState,
    Snapshot,
    TimeEntry,
)
from .errors import EntryNotFound, InvariantViolation, PersistenceError, ValidationError
from .feed import Subscription
from .repository import TimeEntryRepository
from .utils import local_day, utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], dt.datetime]

# Store rejections of a write; reported as they are, not as store failures.
REJECTIONS = (ValidationError, EntryNotFound, InvariantViolation)


class Outcome(str, enum.Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class CommandResult:
    operation: str
    outcome: Outcome
    state: SessionState
    active_entry: Optional[TimeEntry]
    closed_entry: Optional[TimeEntry] = None
    detail: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome is Outcome.APPLIED


@dataclass(frozen=True, slots=True)
class _Delta:
    """Writes issued but not yet folded into the snapshot."""

    closed: Optional[Tuple[int, dt.datetime]] = None
    opened: Optional[TimeEntry] = None


def _state_of(entry: Optional[TimeEntry]) -> SessionState:
    if entry is None:
        return SessionState.IDLE
    if entry.kind is EntryKind.WORK:
        return SessionState.WORKING
    return SessionState.ON_BREAK


def _close_in(entries: Tuple[TimeEntry, ...], entry_id: int, end_time: dt.datetime) -> Tuple[TimeEntry, ...]:
    return tuple(
        entry.closed_at(end_time) if entry.id == entry_id and entry.is_open else entry for entry in entries
    )


class SessionController:
    def __init__(
        self,
        user_id: str,
        repository: TimeEntryRepository,
        *,
        clock: Clock = utcnow,
        strict: bool = False,
    ) -> None:
        self.user_id = user_id
        self._repository = repository
        self._clock = clock
        self.strict = strict
        self.day: dt.date = local_day(clock())
        self._snapshot: Snapshot = ()
        # Open entry filed under an earlier day (session crossing midnight).
        self._carried: Optional[TimeEntry] = None
        self._delta: Optional[_Delta] = None

    # ------------------------------------------------------------------
    # Derived reads
    # ------------------------------------------------------------------
    def _base(self) -> Tuple[TimeEntry, ...]:
        if self._carried is None:
            return self._snapshot
        return (self._carried,) + self._snapshot

    def _view(self) -> Tuple[TimeEntry, ...]:
        entries = self._base()
        delta = self._delta
        if delta is None:
            return entries
        if delta.closed is not None:
            entries = _close_in(entries, *delta.closed)
        opened = delta.opened
        if opened is not None and not any(e.id is not None and e.id == opened.id for e in entries):
            entries = entries + (opened,)
        return tuple(sorted(entries, key=lambda e: e.start_time))

    @property
    def entries(self) -> Tuple[TimeEntry, ...]:
        """Today's entries as the controller currently believes them to be."""
        return tuple(e for e in self._view() if e.day == self.day)

    @property
    def active_entry(self) -> Optional[TimeEntry]:
        for entry in self._view():
            if entry.is_open:
                return entry
        return None

    @property
    def state(self) -> SessionState:
        return _state_of(self.active_entry)

    @property
    def total_work_time(self) -> dt.timedelta:
        return closed_totals(self.entries)[EntryKind.WORK]

    @property
    def total_break_time(self) -> dt.timedelta:
        return closed_totals(self.entries)[EntryKind.BREAK]

    def elapsed_active(self, now: Optional[dt.datetime] = None) -> dt.timedelta:
        active = self.active_entry
        if active is None:
            return dt.timedelta(0)
        return active.duration(now or self._clock())

    def totals(self, now: Optional[dt.datetime] = None) -> Dict[EntryKind, dt.timedelta]:
        """Closed totals plus the live part of the active entry."""
        result = closed_totals(self.entries)
        active = self.active_entry
        if active is not None:
            result[active.kind] += self.elapsed_active(now)
        return result

    # ------------------------------------------------------------------
    # Snapshot intake
    # ------------------------------------------------------------------
    def apply_snapshot(self, snapshot: Snapshot) -> None:
        ordered = tuple(sorted(snapshot, key=lambda e: e.start_time))
        self._snapshot = tuple(e for e in ordered if e.user_id == self.user_id)
        if any(e.is_open for e in self._snapshot):
            self._carried = None

    async def refresh(self) -> None:
        """Pull the current day from the repository, rolling over at midnight."""
        day = local_day(self._clock())
        if day != self.day and self._delta is None:
            logger.info("Session controller for %s rolled over to %s", self.user_id, day)
            self.day = day
            self._snapshot = ()
        snapshot = await self._repository.list_for_day(self.user_id, self.day)
        self.apply_snapshot(snapshot)
        open_entry = await self._repository.find_open(self.user_id)
        if open_entry is not None and open_entry.day != self.day:
            self._carried = open_entry
        else:
            self._carried = None

    async def follow(self, subscription: Subscription) -> None:
        """Consume pushed snapshots until the subscription closes."""
        try:
            async for snapshot in subscription:
                self.apply_snapshot(snapshot)
        finally:
            subscription.close()

    async def watch(self) -> "asyncio.Task[None]":
        subscription = await self._repository.subscribe(self.user_id, self.day)
        return asyncio.ensure_future(self.follow(subscription))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def _result(self, operation: str, outcome: Outcome, closed: Optional[TimeEntry] = None, detail: Optional[str] = None) -> CommandResult:
        return CommandResult(
            operation=operation,
            outcome=outcome,
            state=self.state,
            active_entry=self.active_entry,
            closed_entry=closed,
            detail=detail,
        )

    def _ignore(self, operation: str, detail: str) -> CommandResult:
        if self.strict:
            raise InvariantViolation(detail)
        logger.debug("Ignoring %s for %s: %s", operation, self.user_id, detail)
        return self._result(operation, Outcome.IGNORED, detail=detail)

    def _revert(self, operation: str, exc: Exception) -> None:
        self._delta = None
        logger.info("%s rejected for %s: %s", operation, self.user_id, exc)

    def _roll_back(self, operation: str, exc: Exception) -> PersistenceError:
        self._delta = None
        logger.warning("%s failed for %s, local state reverted to %s", operation, self.user_id, self.state.value, exc_info=exc)
        result = self._result(operation, Outcome.FAILED, detail=str(exc))
        return PersistenceError(f"{operation} failed: {exc}", result=result)

    def _pending(self, kind: EntryKind, now: dt.datetime) -> Tuple[EntryDraft, TimeEntry]:
        draft = EntryDraft(
            user_id=self.user_id,
            kind=kind,
            start_time=now,
            day=self.day,
            created_at=now,
        )
        return draft, TimeEntry.from_draft(Pending(uuid.uuid4().hex), draft)

    def _fold_close(self, entry_id: int, end_time: dt.datetime) -> None:
        if self._carried is not None and self._carried.id == entry_id:
            self._carried = None
        self._snapshot = _close_in(self._snapshot, entry_id, end_time)
        if self._delta is not None:
            self._delta = replace(self._delta, closed=None)

    def _fold_open(self, entry_id: int) -> TimeEntry:
        opened = self._delta.opened.confirmed_as(entry_id)
        if not any(e.id == entry_id for e in self._snapshot):
            self._snapshot = tuple(sorted(self._snapshot + (opened,), key=lambda e: e.start_time))
        self._delta = None
        return opened

    def _now(self) -> dt.datetime:
        return self._clock()

    async def start_work(self) -> CommandResult:
        operation = "start_work"
        if self.state is not SessionState.IDLE:
            return self._ignore(operation, "A session is already active")
        now = self._now()
        draft, pending = self._pending(EntryKind.WORK, now)
        self._delta = _Delta(opened=pending)
        try:
            entry_id = await self._repository.create(draft)
        except REJECTIONS as exc:
            self._revert(operation, exc)
            raise
        except Exception as exc:
            raise self._roll_back(operation, exc) from exc
        opened = self._fold_open(entry_id)
        logger.info("Work started for %s (entry %s)", self.user_id, opened.id)
        return self._result(operation, Outcome.APPLIED)

    async def stop_work(self) -> CommandResult:
        operation = "stop_work"
        active = self.active_entry
        if active is None or active.kind is not EntryKind.WORK:
            return self._ignore(operation, "No work session is active")
        if active.is_pending:
            return self._ignore(operation, "The active session is still being created")
        now = self._now()
        self._delta = _Delta(closed=(active.id, now))
        try:
            await self._repository.close(active.id, now)
        except REJECTIONS as exc:
            self._revert(operation, exc)
            raise
        except Exception as exc:
            raise self._roll_back(operation, exc) from exc
        self._fold_close(active.id, now)
        self._delta = None
        logger.info("Work stopped for %s (entry %s)", self.user_id, active.id)
        return self._result(operation, Outcome.APPLIED, closed=active.closed_at(now))

    async def toggle_break(self) -> CommandResult:
        """Close the active entry and open one of the other kind at the same instant."""
        operation = "toggle_break"
        active = self.active_entry
        if active is None:
            return self._ignore(operation, "No session is active")
        if active.is_pending:
            return self._ignore(operation, "The active session is still being created")
        now = self._now()
        draft, pending = self._pending(active.kind.opposite, now)
        self._delta = _Delta(closed=(active.id, now), opened=pending)
        try:
            await self._repository.close(active.id, now)
        except REJECTIONS as exc:
            self._revert(operation, exc)
            raise
        except Exception as exc:
            raise self._roll_back(operation, exc) from exc
        self._fold_close(active.id, now)
        try:
            entry_id = await self._repository.create(draft)
        except REJECTIONS as exc:
            self._revert(operation, exc)
            raise
        except Exception as exc:
            # The close is durable; only the new entry is withdrawn.
            raise self._roll_back(operation, exc) from exc
        opened = self._fold_open(entry_id)
        logger.info("Switched %s from %s to %s (entry %s)", self.user_id, active.kind.value, opened.kind.value, opened.id)
        return self._result(operation, Outcome.APPLIED, closed=active.closed_at(now))


class ControllerRegistry:
    """One controller per user, shared by every request in the process."""

    def __init__(self, repository: TimeEntryRepository, *, clock: Clock = utcnow, strict: bool = True) -> None:
        self._repository = repository
        self._clock = clock
        self._strict = strict
        self._controllers: Dict[str, SessionController] = {}

    def get(self, user_id: str) -> SessionController:
        controller = self._controllers.get(user_id)
        if controller is None:
            controller = SessionController(user_id, self._repository, clock=self._clock, strict=self._strict)
            self._controllers[user_id] = controller
        return controller

    def users(self) -> List[str]:
        return sorted(self._controllers)
