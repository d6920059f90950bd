from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from session_tracker.engine import NOT_LINKED_ERROR, SessionEngine
from session_tracker.errors import StoreError
from session_tracker.lifecycle import LifecycleEvent, LifecycleMonitor
from session_tracker.models import RecentActivity, SessionState
from session_tracker.store import (
    ACTIVE_STATE_KEY,
    MemoryStore,
    day_log_key,
    decode_active_state,
    decode_day_log,
    encode_active_state,
)


async def wait_until(condition, attempts: int = 200) -> None:
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition never became true")


@pytest.fixture
def engine(presence, store, settings, clock):
    return SessionEngine(presence, store, settings, clock=clock)


async def stored_state(store: MemoryStore):
    return decode_active_state(await store.read(ACTIVE_STATE_KEY))


@pytest.mark.asyncio
async def test_poll_cycles_build_one_session(engine, presence, clock, start_time):
    presence.idle()
    await engine.poll_once()
    presence.playing("A")
    for _ in range(3):
        clock.advance(60)
        await engine.poll_once()
    presence.idle()
    clock.advance(60)
    await engine.poll_once()

    raw = engine.diagnostics()
    assert raw.active_session is None
    assert [(s.activity_id, s.duration_minutes) for s in raw.completed_sessions] == [("A", 3)]
    assert raw.total_minutes == 3
    assert engine.display.first_activity_time_of_day == "20:01"


@pytest.mark.asyncio
async def test_display_includes_running_session(engine, presence, clock):
    presence.playing("730", "Counter-Strike 2")
    await engine.poll_once()
    clock.advance(65 * 60)
    await engine.poll_once()

    display = engine.display
    assert display.current_activity_name == "Counter-Strike 2"
    assert display.total_duration_minutes == 65
    assert display.total_duration_text == "1 h 5 min"
    assert display.is_loading is False
    assert display.last_error is None
    assert engine.state.total_minutes == 0


@pytest.mark.asyncio
async def test_transient_fetch_error_leaves_state_untouched(engine, presence, store, clock):
    presence.playing("A")
    await engine.poll_once()
    before = engine.state
    writes = list(store.writes)

    presence.fail("Steam API returned 503")
    clock.advance(60)
    await engine.poll_once()

    assert engine.state is before
    assert store.writes == writes
    assert engine.display.last_error == "Steam API returned 503"
    assert engine.display.current_activity_name == "A"

    presence.playing("A")
    clock.advance(60)
    await engine.poll_once()
    assert engine.display.last_error is None
    assert engine.state.active_session == before.active_session


@pytest.mark.asyncio
async def test_unlinked_source_reports_error(store, settings, clock):
    engine = SessionEngine(None, store, settings, clock=clock)
    await engine.poll_once()

    assert engine.display.last_error == NOT_LINKED_ERROR
    assert engine.display.is_loading is False
    assert store.writes == []


@pytest.mark.asyncio
async def test_display_is_loading_until_first_cycle(engine):
    await engine.recover()
    assert engine.display.is_loading is True
    assert engine.display.total_duration_text == "No activity today"

    await engine.poll_once()
    assert engine.display.is_loading is False


@pytest.mark.asyncio
async def test_every_cycle_persists_state(engine, presence, store, clock, start_time):
    presence.playing("A")
    await engine.poll_once()

    record = await stored_state(store)
    assert record.active_session.activity_id == "A"
    assert record.last_checked_at == start_time
    assert store.writes[-2:] == [day_log_key(start_time), ACTIVE_STATE_KEY]


@pytest.mark.asyncio
async def test_restart_continues_session_without_double_counting(presence, store, settings, clock):
    first = SessionEngine(presence, store, settings, clock=clock)
    presence.playing("A")
    await first.poll_once()
    clock.advance(60)
    await first.poll_once()

    # Process killed here; a new engine recovers from the store.
    clock.advance(240)
    second = SessionEngine(presence, store, settings, clock=clock)
    await second.poll_once()
    presence.idle()
    clock.advance(60)
    await second.poll_once()

    raw = second.diagnostics()
    assert [s.duration_minutes for s in raw.completed_sessions] == [6]
    assert raw.total_minutes == 6


@pytest.mark.asyncio
async def test_stale_state_from_yesterday_is_ignored(presence, store, settings, clock, start_time):
    stale = SessionState(last_checked_at=start_time - timedelta(days=1))
    await store.write(ACTIVE_STATE_KEY, encode_active_state(stale))

    engine = SessionEngine(presence, store, settings, clock=clock)
    state = await engine.recover()

    assert state == SessionState(last_checked_at=start_time)


@pytest.mark.asyncio
async def test_timezone_aware_record_is_ignored_on_recovery(presence, settings, clock, start_time):
    store = MemoryStore(
        {
            ACTIVE_STATE_KEY: {
                "active_session": {
                    "activity_id": "A",
                    "activity_name": "Game A",
                    "start_time": "2026-10-19T19:00:00+00:00",
                },
                "sessions": [],
                "total_minutes": 0,
                "last_checked_at": "2026-10-19T19:30:00+00:00",
            }
        }
    )
    engine = SessionEngine(presence, store, settings, clock=clock)

    assert await engine.recover() == SessionState(last_checked_at=start_time)

    presence.playing("A")
    await engine.poll_once()
    clock.advance(120)
    await engine.poll_once()
    assert engine.display.total_duration_minutes == 2
    assert engine.display.last_error is None


class UnavailableStore(MemoryStore):
    async def read(self, key):
        raise StoreError(f"Failed to read {key}: database is locked")

    async def write(self, key, value):
        raise StoreError(f"Failed to write {key}: database is locked")


@pytest.mark.asyncio
async def test_unavailable_store_falls_back_to_fresh_state(presence, settings, clock, start_time):
    engine = SessionEngine(presence, UnavailableStore(), settings, clock=clock)
    presence.playing("A")

    await engine.poll_once()
    clock.advance(180)
    await engine.poll_once()

    assert engine.state.active_session.activity_id == "A"
    assert engine.state.active_session.start_time == start_time
    assert engine.display.total_duration_minutes == 3
    assert engine.display.last_error is None


@pytest.mark.asyncio
async def test_background_flushes_in_memory_state(engine, presence, store):
    presence.playing("A")
    await engine.poll_once()
    store.writes.clear()

    await engine.handle_lifecycle(LifecycleEvent.BACKGROUND)

    assert ACTIVE_STATE_KEY in store.writes
    assert presence.snapshot_calls == 1


@pytest.mark.asyncio
async def test_foreground_polls_immediately(engine, presence):
    await engine.recover()
    await engine.handle_lifecycle(LifecycleEvent.FOREGROUND)

    assert presence.snapshot_calls == 1


@pytest.mark.asyncio
async def test_overlapping_triggers_are_dropped(engine, presence):
    await engine.recover()
    presence.gate = asyncio.Event()
    first = asyncio.create_task(engine.scheduler.trigger())
    await wait_until(lambda: presence.snapshot_calls == 1)

    assert engine.scheduler.in_flight is True
    assert await engine.scheduler.trigger() is False

    presence.gate.set()
    assert await first is True
    assert presence.snapshot_calls == 1
    assert engine.scheduler.dropped == 1


@pytest.mark.asyncio
async def test_flush_during_poll_writes_consistent_state(engine, presence, store, clock):
    presence.playing("A")
    await engine.poll_once()
    clock.advance(120)
    presence.idle()
    presence.gate = asyncio.Event()
    cycle = asyncio.create_task(engine.scheduler.trigger())
    await wait_until(lambda: presence.snapshot_calls == 2)

    await engine.flush()
    during = await stored_state(store)
    assert during.active_session.activity_id == "A"
    assert during.sessions == []

    presence.gate.set()
    await cycle
    after = await stored_state(store)
    assert after.active_session is None
    assert [s.duration_minutes for s in after.sessions] == [2]


@pytest.mark.asyncio
async def test_shutdown_closes_active_session(engine, presence, store, clock):
    presence.playing("A")
    await engine.poll_once()
    clock.advance(300)

    await engine.shutdown()

    record = await stored_state(store)
    assert record.active_session is None
    assert [s.duration_minutes for s in record.sessions] == [5]
    day_log = decode_day_log(await store.read(day_log_key(clock())))
    assert day_log.total_minutes == 5


@pytest.mark.asyncio
async def test_shutdown_discards_sub_minute_session(engine, presence, store, clock):
    presence.playing("A")
    await engine.poll_once()
    clock.advance(20)

    await engine.shutdown()

    record = await stored_state(store)
    assert record.active_session is None
    assert record.sessions == []


@pytest.mark.asyncio
async def test_backfill_runs_once_when_day_is_empty(engine, presence, clock, start_time):
    presence.recent = [
        RecentActivity("440", "Team Fortress 2", start_time - timedelta(minutes=10), 25)
    ]
    await engine.poll_once()
    clock.advance(60)
    await engine.poll_once()

    raw = engine.diagnostics()
    assert len(raw.completed_sessions) == 1
    assert raw.completed_sessions[0].is_estimated is True
    assert raw.total_minutes == 25
    assert presence.recent_calls == 1


@pytest.mark.asyncio
async def test_backfill_lookup_failure_is_not_fatal(engine, presence):
    from session_tracker.errors import PresenceError

    presence.recent_error = PresenceError("timeout")
    await engine.poll_once()

    assert engine.display.last_error is None
    assert engine.diagnostics().completed_sessions == []


@pytest.mark.asyncio
async def test_real_session_prevents_backfill(engine, presence, clock, start_time):
    presence.playing("A")
    presence.recent = [RecentActivity("B", "Game B", start_time - timedelta(minutes=5), 30)]
    await engine.poll_once()

    assert presence.recent_calls == 0
    assert engine.diagnostics().completed_sessions == []


@pytest.mark.asyncio
async def test_day_change_starts_new_log(presence, store, settings, clock):
    clock.set(datetime(2026, 10, 19, 23, 50))
    engine = SessionEngine(presence, store, settings, clock=clock)
    presence.playing("A")
    await engine.poll_once()

    clock.set(datetime(2026, 10, 20, 0, 10))
    await engine.poll_once()

    yesterday = decode_day_log(await store.read(day_log_key(datetime(2026, 10, 19))))
    assert [s.duration_minutes for s in yesterday.sessions] == [10]
    state = engine.state
    assert state.day == "2026-10-20"
    assert state.completed_sessions == ()
    assert state.active_session.start_time == datetime(2026, 10, 20, 0, 0)
    assert engine.display.total_duration_minutes == 10


@pytest.mark.asyncio
async def test_subscribers_receive_display_values(engine, presence):
    seen = []
    unsubscribe = engine.subscribe(seen.append)
    presence.playing("A", "Game A")
    await engine.poll_once()
    unsubscribe()
    await engine.poll_once()

    assert seen
    assert seen[-1].current_activity_name == "Game A"
    count = len(seen)
    await engine.poll_once()
    assert len(seen) == count


@pytest.mark.asyncio
async def test_lifecycle_stream_drives_engine(presence, store, settings, clock):
    monitor = LifecycleMonitor()
    engine = SessionEngine(presence, store, settings, clock=clock, lifecycle=monitor)
    presence.playing("A")
    await engine.start()
    try:
        await wait_until(lambda: presence.snapshot_calls == 1)
        await wait_until(lambda: not engine.scheduler.in_flight)

        store.writes.clear()
        monitor.publish(LifecycleEvent.BACKGROUND)
        await wait_until(lambda: ACTIVE_STATE_KEY in store.writes)

        monitor.publish(LifecycleEvent.FOREGROUND)
        await wait_until(lambda: presence.snapshot_calls == 2)
    finally:
        clock.advance(120)
        await engine.shutdown()

    record = await stored_state(store)
    assert record.active_session is None
    assert [s.duration_minutes for s in record.sessions] == [2]
