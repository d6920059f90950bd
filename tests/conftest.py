"""Shared fakes for the session tracker tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Optional, Union

import pytest

from session_tracker.config import EngineSettings
from session_tracker.errors import PresenceError
from session_tracker.models import RecentActivity, Snapshot
from session_tracker.store import MemoryStore


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


Reading = Union[Optional[tuple[str, str]], Exception]


class FakePresence:
    """Returns whatever activity it was last told about."""

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self.current: Reading = None
        self.recent: list[RecentActivity] = []
        self.recent_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.snapshot_calls = 0
        self.recent_calls = 0

    def playing(self, activity_id: str, name: Optional[str] = None) -> None:
        self.current = (activity_id, name or activity_id)

    def idle(self) -> None:
        self.current = None

    def fail(self, message: str = "network down") -> None:
        self.current = PresenceError(message)

    async def fetch_snapshot(self) -> Snapshot:
        self.snapshot_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(self.current, Exception):
            raise self.current
        if self.current is None:
            return Snapshot.idle(self._clock())
        activity_id, name = self.current
        return Snapshot(activity_id=activity_id, activity_name=name, observed_at=self._clock())

    async def fetch_recent_activity(self) -> list[RecentActivity]:
        self.recent_calls += 1
        if self.recent_error is not None:
            raise self.recent_error
        return list(self.recent)


@pytest.fixture
def start_time() -> datetime:
    return datetime(2026, 10, 19, 20, 0, 0)


@pytest.fixture
def clock(start_time: datetime) -> FakeClock:
    return FakeClock(start_time)


@pytest.fixture
def presence(clock: FakeClock) -> FakePresence:
    return FakePresence(clock)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings()
