from __future__ import annotations

import asyncio
import datetime as dt
import os
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Optional, Set

_TMP_DIR = tempfile.mkdtemp(prefix="worktime-tests-")
os.environ.setdefault("WT_SQLITE_PATH", str(Path(_TMP_DIR) / "worktime.db"))
os.environ["WT_TIMEZONE"] = "Europe/Berlin"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from worktime import models  # noqa: E402
from worktime.controller import ControllerRegistry  # noqa: E402
from worktime.database import get_db  # noqa: E402
from worktime.domain import Confirmed, EntryDraft, EntryKind, Snapshot, TimeEntry  # noqa: E402
from worktime.errors import EntryNotFound, PersistenceError  # noqa: E402
from worktime.feed import EntryFeed, Subscription  # noqa: E402
from worktime.main import app, get_clock, get_controllers, get_repository  # noqa: E402
from worktime.repository import SqlAlchemyTimeEntryRepository, TimeEntryRepository, validate_manual_entry  # noqa: E402
from worktime.utils import LOCAL_TZ, UTC  # noqa: E402


class FakeClock:
    def __init__(self, start: dt.datetime) -> None:
        self.current = start

    def __call__(self) -> dt.datetime:
        return self.current

    def advance(self, **kwargs: float) -> dt.datetime:
        self.current = self.current + dt.timedelta(**kwargs)
        return self.current


class MemoryRepository(TimeEntryRepository):
    """Dict-backed repository with switchable failures per operation."""

    def __init__(self) -> None:
        self.entries: Dict[int, TimeEntry] = {}
        self.feed = EntryFeed()
        self.fail_on: Set[str] = set()
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[str] = []
        self._next_id = 1

    async def _wait(self, operation: str) -> None:
        gate = self.gates.get(operation)
        if gate is not None:
            await gate.wait()

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail_on:
            raise PersistenceError(f"{operation} unavailable")

    def _day(self, user_id: str, day: dt.date) -> Snapshot:
        return tuple(
            sorted(
                (e for e in self.entries.values() if e.user_id == user_id and e.day == day),
                key=lambda e: e.start_time,
            )
        )

    def _publish(self, entry: TimeEntry) -> None:
        self.feed.publish(entry.user_id, entry.day, self._day(entry.user_id, entry.day))

    async def subscribe(self, user_id: str, day: dt.date) -> Subscription:
        subscription = self.feed.open(user_id, day)
        subscription.push(self._day(user_id, day))
        return subscription

    async def list_for_day(self, user_id: str, day: dt.date) -> Snapshot:
        self._check("read")
        return self._day(user_id, day)

    async def list_for_range(self, user_id: str, start_day: dt.date, end_day: dt.date) -> Snapshot:
        self._check("read")
        return tuple(
            sorted(
                (e for e in self.entries.values() if e.user_id == user_id and start_day <= e.day <= end_day),
                key=lambda e: (e.day, e.start_time),
            )
        )

    async def find_open(self, user_id: str) -> Optional[TimeEntry]:
        self._check("read")
        for entry in self.entries.values():
            if entry.user_id == user_id and entry.is_open:
                return entry
        return None

    async def get(self, entry_id: int) -> TimeEntry:
        self._check("read")
        if entry_id not in self.entries:
            raise EntryNotFound(entry_id)
        return self.entries[entry_id]

    async def create(self, draft: EntryDraft) -> int:
        await self._wait("create")
        self._check("create")
        entry_id = self._next_id
        self._next_id += 1
        entry = TimeEntry.from_draft(Confirmed(entry_id), draft)
        self.entries[entry_id] = entry
        self._publish(entry)
        return entry_id

    async def close(self, entry_id: int, end_time: dt.datetime) -> None:
        await self._wait("close")
        self._check("close")
        entry = self.entries[entry_id].closed_at(end_time)
        self.entries[entry_id] = entry
        self._publish(entry)

    async def create_manual(self, user_id, day, kind, start_time, end_time, note) -> int:
        note = validate_manual_entry(start_time, end_time, note)
        draft = EntryDraft(user_id, EntryKind(kind), start_time, day, end_time=end_time, is_manual=True, note=note)
        return await self.create(draft)

    async def update(self, entry_id, changes):
        raise NotImplementedError

    async def delete(self, entry_id: int) -> None:
        self._check("delete")
        entry = self.entries.pop(entry_id)
        self._publish(entry)

    def open_entries(self, user_id: str) -> List[TimeEntry]:
        return [e for e in self.entries.values() if e.user_id == user_id and e.is_open]


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def sample_day() -> dt.date:
    return dt.date(2024, 3, 4)


def local_time(day: dt.date, hour: int, minute: int = 0) -> dt.datetime:
    return dt.datetime.combine(day, dt.time(hour, minute), tzinfo=LOCAL_TZ).astimezone(UTC)


@pytest.fixture()
def at(sample_day: dt.date):
    """UTC instant for a local wall-clock time on the sample day."""

    def _at(hour: int, minute: int = 0, day: Optional[dt.date] = None) -> dt.datetime:
        return local_time(day or sample_day, hour, minute)

    return _at


@pytest.fixture()
def clock(sample_day: dt.date) -> FakeClock:
    return FakeClock(local_time(sample_day, 9))


@pytest.fixture()
def engine(tmp_path: Path):
    url = f"sqlite:///{tmp_path / 'test.db'}"
    engine = create_engine(url, connect_args={"check_same_thread": False}, future=True)
    models.Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture()
def session(session_factory) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def repository(session_factory) -> SqlAlchemyTimeEntryRepository:
    return SqlAlchemyTimeEntryRepository(session_factory)


@pytest.fixture()
def memory_repository() -> MemoryRepository:
    return MemoryRepository()


@pytest.fixture()
def client(session_factory, repository, clock) -> Generator[TestClient, None, None]:
    registry = ControllerRegistry(repository, clock=clock)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_controllers] = lambda: registry
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
