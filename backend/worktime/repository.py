from __future__ import annotations

import datetime as dt
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from .database import SessionLocal, db_session
from .domain import Confirmed, EntryDraft, EntryKind, Snapshot, TimeEntry
from .errors import EntryNotFound, PersistenceError, ValidationError
from .feed import EntryFeed, Subscription
from .models import TimeEntryRecord
from .utils import ensure_utc, from_db_datetime, utcnow

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("start_time", "end_time", "kind", "note")


def _coerce_kind(value: Any) -> EntryKind:
    try:
        return EntryKind(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown entry kind: {value!r}") from exc


def validate_interval(start_time: Optional[dt.datetime], end_time: Optional[dt.datetime]) -> None:
    if start_time is None or end_time is None:
        raise ValidationError("Start and end time are required")
    if ensure_utc(end_time) <= ensure_utc(start_time):
        raise ValidationError("End time must be after start time")


def validate_note(note: Optional[str]) -> str:
    if note is None or not note.strip():
        raise ValidationError("Manual entries require a note")
    return note.strip()


def validate_manual_entry(
    start_time: Optional[dt.datetime],
    end_time: Optional[dt.datetime],
    note: Optional[str],
) -> str:
    """Check a manual entry and return its normalized note."""
    validate_interval(start_time, end_time)
    return validate_note(note)


def _to_entry(record: TimeEntryRecord) -> TimeEntry:
    return TimeEntry(
        handle=Confirmed(record.id),
        user_id=record.user_id,
        kind=EntryKind(record.kind),
        start_time=from_db_datetime(record.start_time),
        end_time=from_db_datetime(record.end_time),
        day=record.day,
        is_manual=bool(record.is_manual),
        note=record.note,
        created_at=from_db_datetime(record.created_at),
        updated_at=from_db_datetime(record.updated_at),
    )


class TimeEntryRepository(ABC):
    """Durable store of time entries with a push feed of day snapshots."""

    @abstractmethod
    async def subscribe(self, user_id: str, day: dt.date) -> Subscription:
        """Open a feed for one user-day; the current snapshot is delivered first."""

    @abstractmethod
    async def list_for_day(self, user_id: str, day: dt.date) -> Snapshot: ...

    @abstractmethod
    async def list_for_range(self, user_id: str, start_day: dt.date, end_day: dt.date) -> Snapshot: ...

    @abstractmethod
    async def find_open(self, user_id: str) -> Optional[TimeEntry]: ...

    @abstractmethod
    async def get(self, entry_id: int) -> TimeEntry: ...

    @abstractmethod
    async def create(self, draft: EntryDraft) -> int: ...

    @abstractmethod
    async def close(self, entry_id: int, end_time: dt.datetime) -> None:
        """Set the end of an open entry; nothing else about it changes."""

    @abstractmethod
    async def create_manual(
        self,
        user_id: str,
        day: dt.date,
        kind: EntryKind,
        start_time: dt.datetime,
        end_time: dt.datetime,
        note: str,
    ) -> int: ...

    @abstractmethod
    async def update(self, entry_id: int, changes: Dict[str, Any]) -> TimeEntry: ...

    @abstractmethod
    async def delete(self, entry_id: int) -> None: ...


class SqlAlchemyTimeEntryRepository(TimeEntryRepository):
    """Repository over the ``time_entries`` table.

    Blocking ORM work runs in the threadpool; snapshot publication happens
    back on the event loop once the write has been committed.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        feed: Optional[EntryFeed] = None,
    ) -> None:
        self._session_factory = session_factory
        self.feed = feed or EntryFeed()

    async def _run(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await run_in_threadpool(func, *args)
        except SQLAlchemyError as exc:
            logger.warning("Time entry %s failed: %s", operation, exc)
            raise PersistenceError(f"Time entry {operation} failed") from exc

    # ------------------------------------------------------------------
    # Blocking helpers (threadpool)
    # ------------------------------------------------------------------
    def _query_day(self, db: Session, user_id: str, day: dt.date) -> Snapshot:
        records = (
            db.query(TimeEntryRecord)
            .filter(and_(TimeEntryRecord.user_id == user_id, TimeEntryRecord.day == day))
            .order_by(TimeEntryRecord.start_time.asc(), TimeEntryRecord.id.asc())
            .all()
        )
        return tuple(_to_entry(record) for record in records)

    def _load_day(self, user_id: str, day: dt.date) -> Snapshot:
        with db_session(self._session_factory) as db:
            return self._query_day(db, user_id, day)

    def _load_range(self, user_id: str, start_day: dt.date, end_day: dt.date) -> Snapshot:
        with db_session(self._session_factory) as db:
            records = (
                db.query(TimeEntryRecord)
                .filter(
                    and_(
                        TimeEntryRecord.user_id == user_id,
                        TimeEntryRecord.day >= start_day,
                        TimeEntryRecord.day <= end_day,
                    )
                )
                .order_by(TimeEntryRecord.day.asc(), TimeEntryRecord.start_time.asc())
                .all()
            )
            return tuple(_to_entry(record) for record in records)

    def _load_open(self, user_id: str) -> Optional[TimeEntry]:
        with db_session(self._session_factory) as db:
            record = (
                db.query(TimeEntryRecord)
                .filter(TimeEntryRecord.user_id == user_id, TimeEntryRecord.end_time.is_(None))
                .order_by(TimeEntryRecord.start_time.desc())
                .first()
            )
            return _to_entry(record) if record else None

    def _load_one(self, entry_id: int) -> TimeEntry:
        with db_session(self._session_factory) as db:
            record = db.get(TimeEntryRecord, entry_id)
            if record is None:
                raise EntryNotFound(entry_id)
            return _to_entry(record)

    def _insert(self, draft: EntryDraft) -> Tuple[int, Snapshot]:
        with db_session(self._session_factory) as db:
            record = TimeEntryRecord(
                user_id=draft.user_id,
                kind=draft.kind.value,
                start_time=ensure_utc(draft.start_time),
                end_time=ensure_utc(draft.end_time) if draft.end_time else None,
                day=draft.day,
                is_manual=draft.is_manual,
                note=draft.note,
                created_at=ensure_utc(draft.created_at) if draft.created_at else utcnow(),
            )
            db.add(record)
            db.flush()
            entry_id = record.id
            snapshot = self._query_day(db, draft.user_id, draft.day)
        return entry_id, snapshot

    def _mark_closed(self, entry_id: int, end_time: dt.datetime) -> Tuple[str, dt.date, Snapshot]:
        with db_session(self._session_factory) as db:
            record = db.get(TimeEntryRecord, entry_id)
            if record is None:
                raise EntryNotFound(entry_id)
            if record.end_time is not None:
                raise ValidationError(f"Time entry {entry_id} is already closed")
            if ensure_utc(end_time) <= from_db_datetime(record.start_time):
                raise ValidationError("End time must be after start time")
            record.mark_closed(ensure_utc(end_time))
            db.add(record)
            db.flush()
            return record.user_id, record.day, self._query_day(db, record.user_id, record.day)

    def _apply_changes(self, entry_id: int, changes: Dict[str, Any]) -> Tuple[TimeEntry, List[Tuple[str, dt.date, Snapshot]]]:
        with db_session(self._session_factory) as db:
            record = db.get(TimeEntryRecord, entry_id)
            if record is None:
                raise EntryNotFound(entry_id)
            if record.end_time is None:
                raise ValidationError("Open entries cannot be edited")
            old_day = record.day

            start_time = from_db_datetime(record.start_time)
            end_time = from_db_datetime(record.end_time)
            if changes.get("start_time") is not None:
                start_time = ensure_utc(changes["start_time"])
            if changes.get("end_time") is not None:
                end_time = ensure_utc(changes["end_time"])
            validate_interval(start_time, end_time)
            note = validate_note(changes["note"] if "note" in changes else record.note)

            record.start_time = start_time
            record.end_time = end_time
            if changes.get("kind") is not None:
                record.kind = _coerce_kind(changes["kind"]).value
            if changes.get("day") is not None:
                record.day = changes["day"]
            record.note = note
            record.is_manual = True
            record.updated_at = utcnow()
            db.add(record)
            db.flush()

            updated = _to_entry(record)
            snapshots = [(record.user_id, day, self._query_day(db, record.user_id, day)) for day in {old_day, record.day}]
        return updated, snapshots

    def _remove(self, entry_id: int) -> Tuple[str, dt.date, Snapshot]:
        with db_session(self._session_factory) as db:
            record = db.get(TimeEntryRecord, entry_id)
            if record is None:
                raise EntryNotFound(entry_id)
            if record.end_time is None:
                raise ValidationError("Open entries cannot be deleted")
            user_id, day = record.user_id, record.day
            db.delete(record)
            db.flush()
            return user_id, day, self._query_day(db, user_id, day)

    # ------------------------------------------------------------------
    # Async contract
    # ------------------------------------------------------------------
    async def subscribe(self, user_id: str, day: dt.date) -> Subscription:
        subscription = self.feed.open(user_id, day)
        try:
            snapshot = await self.list_for_day(user_id, day)
        except PersistenceError:
            subscription.close()
            raise
        subscription.push(snapshot)
        return subscription

    async def list_for_day(self, user_id: str, day: dt.date) -> Snapshot:
        return await self._run("read", self._load_day, user_id, day)

    async def list_for_range(self, user_id: str, start_day: dt.date, end_day: dt.date) -> Snapshot:
        return await self._run("read", self._load_range, user_id, start_day, end_day)

    async def find_open(self, user_id: str) -> Optional[TimeEntry]:
        return await self._run("read", self._load_open, user_id)

    async def get(self, entry_id: int) -> TimeEntry:
        return await self._run("read", self._load_one, entry_id)

    async def create(self, draft: EntryDraft) -> int:
        entry_id, snapshot = await self._run("create", self._insert, draft)
        logger.info("Created %s entry %s for %s on %s", draft.kind.value, entry_id, draft.user_id, draft.day)
        self.feed.publish(draft.user_id, draft.day, snapshot)
        return entry_id

    async def close(self, entry_id: int, end_time: dt.datetime) -> None:
        user_id, day, snapshot = await self._run("close", self._mark_closed, entry_id, end_time)
        logger.info("Closed entry %s for %s", entry_id, user_id)
        self.feed.publish(user_id, day, snapshot)

    async def create_manual(
        self,
        user_id: str,
        day: dt.date,
        kind: EntryKind,
        start_time: dt.datetime,
        end_time: dt.datetime,
        note: str,
    ) -> int:
        normalized_note = validate_manual_entry(start_time, end_time, note)
        draft = EntryDraft(
            user_id=user_id,
            kind=_coerce_kind(kind),
            start_time=ensure_utc(start_time),
            end_time=ensure_utc(end_time),
            day=day,
            is_manual=True,
            note=normalized_note,
            created_at=utcnow(),
        )
        return await self.create(draft)

    async def update(self, entry_id: int, changes: Dict[str, Any]) -> TimeEntry:
        unknown = set(changes) - set(EDITABLE_FIELDS) - {"day"}
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        updated, snapshots = await self._run("update", self._apply_changes, entry_id, changes)
        logger.info("Updated entry %s for %s", entry_id, updated.user_id)
        for user_id, day, snapshot in snapshots:
            self.feed.publish(user_id, day, snapshot)
        return updated

    async def delete(self, entry_id: int) -> None:
        user_id, day, snapshot = await self._run("delete", self._remove, entry_id)
        logger.info("Deleted entry %s for %s", entry_id, user_id)
        self.feed.publish(user_id, day, snapshot)
