"""Domain models for reconstructed activity sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional


def day_key(day: date | datetime) -> str:
    """Return the calendar-day partition key for a local date or datetime."""
    if isinstance(day, datetime):
        day = day.date()
    return day.isoformat()


def whole_minutes(start: datetime, end: datetime) -> int:
    """Floor the elapsed time between two timestamps to whole minutes."""
    seconds = (end - start).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds // 60)


@dataclass(slots=True, frozen=True)
class Snapshot:
    """One instantaneous read of what the user is doing right now."""

    activity_id: Optional[str]
    activity_name: Optional[str]
    observed_at: datetime

    @property
    def is_active(self) -> bool:
        return bool(self.activity_name)

    @classmethod
    def idle(cls, observed_at: datetime) -> "Snapshot":
        return cls(activity_id=None, activity_name=None, observed_at=observed_at)


@dataclass(slots=True, frozen=True)
class RecentActivity:
    """Coarse "recently active" record used to backfill missed sessions."""

    activity_id: str
    activity_name: str
    last_observed_at: datetime
    recent_minutes: int


@dataclass(slots=True, frozen=True)
class Session:
    """Represents a contiguous block of time spent in a single activity."""

    activity_id: str
    activity_name: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_minutes: int = 0
    is_estimated: bool = False

    def elapsed_minutes(self, now: datetime) -> int:
        return whole_minutes(self.start_time, self.end_time or now)

    def matches(self, snapshot: Snapshot) -> bool:
        return self.activity_id == (snapshot.activity_id or "")


@dataclass(slots=True, frozen=True)
class SessionState:
    """Everything the engine knows about one calendar day."""

    last_checked_at: datetime
    active_session: Optional[Session] = None
    completed_sessions: tuple[Session, ...] = ()
    total_minutes: int = 0
    first_activity_time: Optional[datetime] = None

    @property
    def day(self) -> str:
        return day_key(self.last_checked_at)

    @property
    def is_empty(self) -> bool:
        return (
            not self.completed_sessions
            and self.active_session is None
            and self.first_activity_time is None
        )


@dataclass(slots=True)
class DisplayValues:
    """Display-ready values handed to UI callers after every poll cycle."""

    current_activity_name: Optional[str] = None
    first_activity_time_of_day: Optional[str] = None
    total_duration_minutes: int = 0
    total_duration_text: str = ""
    is_loading: bool = True
    last_error: Optional[str] = None


@dataclass(slots=True)
class Diagnostics:
    active_session: Optional[Session]
    completed_sessions: list[Session] = field(default_factory=list)
    total_minutes: int = 0
