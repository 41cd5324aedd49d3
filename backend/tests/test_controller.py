from __future__ import annotations

import asyncio
import contextlib
import datetime as dt
import random

import pytest

from worktime.calculator import compute_daily
from worktime.controller import ControllerRegistry, Outcome, SessionController
from worktime.domain import EntryDraft, EntryKind, SessionState, UserProfile
from worktime.errors import InvariantViolation, PersistenceError, ValidationError

pytestmark = pytest.mark.anyio

GERMAN = UserProfile(employment_type="employee", holiday_region="de-by")


def make_controller(repository, clock, **kwargs) -> SessionController:
    return SessionController("u1", repository, clock=clock, **kwargs)


async def test_start_and_stop_work(memory_repository, clock, sample_day):
    controller = make_controller(memory_repository, clock)
    assert controller.state is SessionState.IDLE

    started = await controller.start_work()
    assert started.outcome is Outcome.APPLIED
    assert started.state is SessionState.WORKING
    assert started.active_entry.id == 1
    assert started.active_entry.day == sample_day

    clock.advance(hours=2)
    stopped = await controller.stop_work()
    assert stopped.applied
    assert stopped.state is SessionState.IDLE
    assert stopped.closed_entry.end_time == clock()
    assert memory_repository.entries[1].end_time == clock()
    assert controller.total_work_time == dt.timedelta(hours=2)


async def test_toggle_break_closes_and_opens_at_same_instant(memory_repository, clock):
    controller = make_controller(memory_repository, clock)
    await controller.start_work()
    switch_at = clock.advance(hours=3)

    result = await controller.toggle_break()
    assert result.applied
    assert result.state is SessionState.ON_BREAK
    work, pause = controller.entries
    assert work.kind is EntryKind.WORK and work.end_time == switch_at
    assert pause.kind is EntryKind.BREAK and pause.start_time == switch_at
    assert pause.is_open

    back_at = clock.advance(minutes=30)
    result = await controller.toggle_break()
    assert result.state is SessionState.WORKING
    assert controller.active_entry.start_time == back_at
    assert controller.entries[1].end_time == back_at


async def test_transitions_without_matching_state_are_ignored(memory_repository, clock):
    controller = make_controller(memory_repository, clock)
    assert (await controller.stop_work()).outcome is Outcome.IGNORED
    assert (await controller.toggle_break()).outcome is Outcome.IGNORED

    await controller.start_work()
    again = await controller.start_work()
    assert again.outcome is Outcome.IGNORED
    assert again.detail

    await controller.toggle_break()
    assert (await controller.stop_work()).outcome is Outcome.IGNORED
    assert controller.state is SessionState.ON_BREAK
    assert memory_repository.calls.count("create") == 2


async def test_strict_controller_rejects_invalid_transitions(memory_repository, clock):
    controller = make_controller(memory_repository, clock, strict=True)
    with pytest.raises(InvariantViolation):
        await controller.stop_work()
    await controller.start_work()
    with pytest.raises(InvariantViolation):
        await controller.start_work()
    assert len(memory_repository.entries) == 1


async def test_single_active_entry_over_random_sequence(memory_repository, clock):
    controller = make_controller(memory_repository, clock)
    rng = random.Random(20240304)
    commands = [controller.start_work, controller.stop_work, controller.toggle_break]
    for _ in range(60):
        clock.advance(minutes=rng.randint(1, 20))
        await rng.choice(commands)()
        open_entries = memory_repository.open_entries("u1")
        assert len(open_entries) <= 1
        active = controller.active_entry
        if open_entries:
            assert active is not None and active.id == open_entries[0].id
            assert active.kind is open_entries[0].kind
        else:
            assert controller.state is SessionState.IDLE


async def test_pending_entry_is_visible_while_create_is_in_flight(memory_repository, clock):
    gate = asyncio.Event()
    memory_repository.gates["create"] = gate
    controller = make_controller(memory_repository, clock)

    task = asyncio.ensure_future(controller.start_work())
    await asyncio.sleep(0)
    assert controller.state is SessionState.WORKING
    assert controller.active_entry.is_pending
    assert (await controller.start_work()).outcome is Outcome.IGNORED
    assert (await controller.stop_work()).outcome is Outcome.IGNORED

    gate.set()
    result = await task
    assert result.applied
    assert controller.active_entry.id == 1
    assert not controller.active_entry.is_pending
    assert len(memory_repository.entries) == 1


async def test_failed_start_rolls_back(memory_repository, clock):
    memory_repository.fail_on.add("create")
    controller = make_controller(memory_repository, clock)
    with pytest.raises(PersistenceError) as excinfo:
        await controller.start_work()
    assert excinfo.value.result.outcome is Outcome.FAILED
    assert excinfo.value.result.state is SessionState.IDLE
    assert controller.state is SessionState.IDLE
    assert controller.entries == ()
    assert memory_repository.entries == {}


async def test_failed_stop_keeps_session_running(memory_repository, clock):
    controller = make_controller(memory_repository, clock)
    await controller.start_work()
    clock.advance(hours=1)
    memory_repository.fail_on.add("close")
    with pytest.raises(PersistenceError) as excinfo:
        await controller.stop_work()
    assert excinfo.value.result.state is SessionState.WORKING
    assert controller.state is SessionState.WORKING
    assert controller.active_entry.end_time is None

    memory_repository.fail_on.clear()
    assert (await controller.stop_work()).applied


async def test_failed_toggle_close_changes_nothing(memory_repository, clock):
    controller = make_controller(memory_repository, clock)
    await controller.start_work()
    clock.advance(hours=1)
    memory_repository.fail_on.add("close")
    with pytest.raises(PersistenceError):
        await controller.toggle_break()
    assert controller.state is SessionState.WORKING
    assert len(memory_repository.entries) == 1


async def test_failed_toggle_create_leaves_session_idle(memory_repository, clock):
    controller = make_controller(memory_repository, clock)
    await controller.start_work()
    clock.advance(hours=1)
    memory_repository.fail_on.add("create")
    with pytest.raises(PersistenceError) as excinfo:
        await controller.toggle_break()
    assert excinfo.value.result.state is SessionState.IDLE
    assert controller.state is SessionState.IDLE
    assert memory_repository.open_entries("u1") == []
    assert memory_repository.entries[1].end_time == clock()
    assert controller.entries[0].end_time == clock()


async def test_totals_include_live_active_entry(memory_repository, clock):
    controller = make_controller(memory_repository, clock)
    await controller.start_work()
    clock.advance(hours=2)
    await controller.toggle_break()
    clock.advance(minutes=15)
    await controller.toggle_break()
    clock.advance(minutes=45)

    assert controller.total_work_time == dt.timedelta(hours=2)
    assert controller.total_break_time == dt.timedelta(minutes=15)
    assert controller.elapsed_active() == dt.timedelta(minutes=45)
    totals = controller.totals()
    assert totals[EntryKind.WORK] == dt.timedelta(hours=2, minutes=45)
    assert totals[EntryKind.BREAK] == dt.timedelta(minutes=15)


async def test_refresh_picks_up_entries_written_elsewhere(memory_repository, clock, at, sample_day):
    controller = make_controller(memory_repository, clock)
    await memory_repository.create(EntryDraft("u1", EntryKind.WORK, at(8), sample_day))
    await memory_repository.create(EntryDraft("u2", EntryKind.WORK, at(8), sample_day))
    await controller.refresh()
    assert controller.state is SessionState.WORKING
    assert [e.user_id for e in controller.entries] == ["u1"]


async def test_open_entry_from_previous_day_is_carried(memory_repository, sample_day, at):
    next_day = sample_day + dt.timedelta(days=1)
    await memory_repository.create(EntryDraft("u1", EntryKind.WORK, at(22), sample_day))
    controller = make_controller(memory_repository, lambda: at(1, day=next_day))
    await controller.refresh()

    assert controller.day == next_day
    assert controller.state is SessionState.WORKING
    assert controller.entries == ()
    assert controller.active_entry.day == sample_day

    result = await controller.stop_work()
    assert result.applied
    assert controller.state is SessionState.IDLE
    assert memory_repository.entries[1].end_time == at(1, day=next_day)
    assert memory_repository.entries[1].day == sample_day


async def test_refresh_rolls_over_at_midnight(memory_repository, clock, sample_day):
    controller = make_controller(memory_repository, clock)
    await controller.start_work()
    clock.advance(hours=1)
    await controller.stop_work()
    clock.advance(days=1)
    await controller.refresh()
    assert controller.day == sample_day + dt.timedelta(days=1)
    assert controller.entries == ()
    assert controller.total_work_time == dt.timedelta(0)


async def test_watch_applies_snapshots_from_other_writers(memory_repository, clock, at, sample_day):
    controller = make_controller(memory_repository, clock)
    task = await controller.watch()
    await memory_repository.create_manual("u1", sample_day, EntryKind.WORK, at(7), at(8), "forgot to clock in")
    for _ in range(20):
        await asyncio.sleep(0)
        if controller.entries:
            break
    assert [e.note for e in controller.entries] == ["forgot to clock in"]
    assert memory_repository.feed.subscriber_count("u1", sample_day) == 1

    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    assert memory_repository.feed.subscriber_count("u1", sample_day) == 0


async def test_registry_shares_one_controller_per_user(memory_repository, clock):
    registry = ControllerRegistry(memory_repository, clock=clock)
    assert registry.get("a") is registry.get("a")
    assert registry.get("b") is not registry.get("a")
    assert registry.users() == ["a", "b"]
    assert registry.get("a").strict is True


async def test_full_day_against_database(repository, clock, sample_day):
    controller = make_controller(repository, clock)
    await controller.start_work()
    clock.advance(hours=3)
    await controller.toggle_break()
    clock.advance(minutes=30)
    await controller.toggle_break()
    clock.advance(hours=4)
    await controller.stop_work()

    entries = await repository.list_for_day("u1", sample_day)
    assert [e.kind for e in entries] == [EntryKind.WORK, EntryKind.BREAK, EntryKind.WORK]
    assert entries[0].end_time == entries[1].start_time
    assert entries[1].end_time == entries[2].start_time
    assert all(not e.is_open for e in entries)
    assert await repository.find_open("u1") is None

    result = compute_daily(entries, GERMAN, clock())
    assert result.gross == 7 * 60
    assert result.explicit_break == 30
    assert result.deducted_break == 0
    assert result.net == 7 * 60


async def test_stop_of_entry_closed_elsewhere_is_a_rejection(repository, clock):
    first = make_controller(repository, clock)
    second = make_controller(repository, clock)
    await first.start_work()
    await second.refresh()
    assert second.state is SessionState.WORKING

    clock.advance(hours=1)
    await first.stop_work()
    with pytest.raises(ValidationError) as excinfo:
        await second.stop_work()
    assert not isinstance(excinfo.value, PersistenceError)
    assert second.state is SessionState.WORKING

    await second.refresh()
    assert second.state is SessionState.IDLE


async def test_stop_at_start_instant_is_a_rejection(repository, clock):
    controller = make_controller(repository, clock)
    await controller.start_work()
    with pytest.raises(ValidationError):
        await controller.stop_work()
    assert controller.state is SessionState.WORKING
    assert (await repository.find_open("u1")) is not None

    clock.advance(minutes=1)
    assert (await controller.stop_work()).applied
