"""Session reconciliation engine: polls presence and keeps today's sessions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import date, datetime
from typing import Callable, Optional

from .aggregator import format_duration, format_time_of_day, summarize
from .config import EngineSettings
from .errors import PresenceError, StoreError
from .lifecycle import LifecycleEvent, LifecycleMonitor
from .models import Diagnostics, DisplayValues, RecentActivity, SessionState, day_key
from .presence import PresenceSource
from .scheduler import PollScheduler
from .state_machine import (
    apply_backfill,
    close_active,
    needs_backfill,
    roll_over,
    step,
)
from .store import (
    PersistenceStore,
    day_log_key,
    encode_day_log,
    persist_state,
    recover_state,
)

logger = logging.getLogger(__name__)

NOT_LINKED_ERROR = "Presence account not linked"

DisplayCallback = Callable[[DisplayValues], None]


class SessionEngine:
    """Owns one day's :class:`SessionState` and drives it from presence polls.

    Every poll cycle fetches a snapshot, applies the transition in memory,
    refreshes the display values and finally writes the state. A failed fetch
    leaves the state untouched; the next scheduled poll retries it.
    """

    def __init__(
        self,
        source: Optional[PresenceSource],
        store: PersistenceStore,
        settings: Optional[EngineSettings] = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
        lifecycle: Optional[LifecycleMonitor] = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self._source = source
        self._store = store
        self._clock = clock
        self._lifecycle = lifecycle
        self._state: Optional[SessionState] = None
        self._display = DisplayValues(total_duration_text=format_duration(0))
        self._subscribers: list[DisplayCallback] = []
        self._scheduler = PollScheduler(
            self.poll_once, self.settings.poll_interval.total_seconds()
        )
        self._lifecycle_task: Optional[asyncio.Task[None]] = None
        self._resume_tasks: set[asyncio.Task[bool]] = set()

    async def __aenter__(self) -> "SessionEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    @property
    def state(self) -> SessionState:
        if self._state is None:
            raise RuntimeError("Engine has not recovered its state yet.")
        return self._state

    @property
    def display(self) -> DisplayValues:
        return self._display

    @property
    def store(self) -> PersistenceStore:
        return self._store

    @property
    def scheduler(self) -> PollScheduler:
        return self._scheduler

    def diagnostics(self) -> Diagnostics:
        state = self.state
        return Diagnostics(
            active_session=state.active_session,
            completed_sessions=list(state.completed_sessions),
            total_minutes=state.total_minutes,
        )

    def subscribe(self, callback: DisplayCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def recover(self) -> SessionState:
        now = self._clock()
        self._state = await recover_state(self._store, now)
        self._refresh(now, loading=True)
        return self._state

    async def start(self) -> None:
        """Recover persisted state, then start polling and lifecycle handling."""
        if self._state is None:
            await self.recover()
        self._scheduler.start()
        if self._lifecycle is not None and self._lifecycle_task is None:
            self._lifecycle_task = asyncio.create_task(self._consume_lifecycle())

    async def poll_once(self) -> None:
        """One poll cycle: fetch, transition, backfill, refresh, persist."""
        if self._state is None:
            await self.recover()
        if self._source is None:
            self._fail(NOT_LINKED_ERROR)
            return

        try:
            snapshot = await self._source.fetch_snapshot()
        except PresenceError as exc:
            logger.warning("Presence fetch failed: %s", exc)
            self._fail(str(exc))
            return

        now = self._clock()
        state = self.state
        finished_day: Optional[SessionState] = None
        if day_key(state.last_checked_at) != day_key(now):
            finished_day, state = roll_over(state, now, self.settings)
            logger.info(
                "Day changed from %s to %s; starting a new session log",
                finished_day.day,
                day_key(now),
            )

        state = step(state, snapshot, now, self.settings).state
        if needs_backfill(state):
            recent = await self._fetch_recent()
            state = apply_backfill(state, recent, now, self.settings).state

        # A cancelled cycle never leaves a half-applied state behind.
        self._state = state
        logger.debug(
            "Polled %s: active=%s total=%d sessions=%d",
            snapshot.activity_name or "idle",
            state.active_session.activity_name if state.active_session else None,
            state.total_minutes,
            len(state.completed_sessions),
        )

        self._display = replace(self._display, last_error=None)
        self._refresh(now)

        if finished_day is not None:
            await self._write_day_log(finished_day, finished_day.last_checked_at.date())
        await self._persist(self.state)

    async def flush(self) -> None:
        """Write the in-memory state as it stands right now."""
        if self._state is None:
            return
        await self._persist(self._state)

    async def handle_lifecycle(self, event: LifecycleEvent) -> None:
        if event is LifecycleEvent.BACKGROUND:
            logger.info("Moving to background; flushing session state.")
            await self.flush()
        elif event is LifecycleEvent.FOREGROUND:
            logger.info("Returned to foreground; polling now.")
            await self._scheduler.trigger()

    async def shutdown(self) -> None:
        """Stop polling and close the active session as an idle observation."""
        if self._lifecycle is not None:
            self._lifecycle.close()
        if self._lifecycle_task is not None:
            self._lifecycle_task.cancel()
            await asyncio.gather(self._lifecycle_task, return_exceptions=True)
            self._lifecycle_task = None
        for task in list(self._resume_tasks):
            task.cancel()
        await asyncio.gather(*self._resume_tasks, return_exceptions=True)
        await self._scheduler.stop()

        if self._state is None:
            return
        now = self._clock()
        state = self._state
        finished_day: Optional[SessionState] = None
        if day_key(state.last_checked_at) != day_key(now):
            finished_day, state = roll_over(state, now, self.settings)
        self._state = close_active(state, now, self.settings).state
        self._refresh(now)
        if finished_day is not None:
            await self._write_day_log(finished_day, finished_day.last_checked_at.date())
        await self._persist(self._state)
        logger.info("Session engine stopped.")

    async def _consume_lifecycle(self) -> None:
        assert self._lifecycle is not None
        async for event in self._lifecycle.events():
            if event is LifecycleEvent.FOREGROUND:
                # Resume polls go through the scheduler so they stay single-flight.
                task = asyncio.create_task(self._scheduler.trigger())
                self._resume_tasks.add(task)
                task.add_done_callback(self._resume_tasks.discard)
            else:
                try:
                    await self.handle_lifecycle(event)
                except Exception:
                    logger.exception("Failed to handle lifecycle event %s", event.value)

    async def _fetch_recent(self) -> list[RecentActivity]:
        assert self._source is not None
        try:
            return list(await self._source.fetch_recent_activity())
        except PresenceError as exc:
            logger.warning("Recent activity lookup failed: %s", exc)
            return []

    async def _persist(self, state: SessionState) -> None:
        try:
            await persist_state(self._store, state)
        except StoreError:
            logger.exception("Failed to persist session state.")

    async def _write_day_log(self, state: SessionState, day: date) -> None:
        try:
            await self._store.write(day_log_key(day), encode_day_log(state, day))
        except StoreError:
            logger.exception("Failed to persist day log for %s", day)

    def _fail(self, message: str) -> None:
        self._display = replace(self._display, is_loading=False, last_error=message)
        self._notify()

    def _refresh(self, now: datetime, *, loading: bool = False) -> None:
        totals = summarize(self.state, now)
        self._display = replace(
            self._display,
            current_activity_name=totals.current_activity_name,
            first_activity_time_of_day=(
                format_time_of_day(totals.first_activity_time_of_day)
                if totals.first_activity_time_of_day
                else None
            ),
            total_duration_minutes=totals.total_duration_minutes,
            total_duration_text=format_duration(totals.total_duration_minutes),
            is_loading=loading,
        )
        self._notify()

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback(self._display)
            except Exception:
                logger.exception("Display subscriber failed.")
