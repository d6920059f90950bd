"""Display values derived from a session state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .models import SessionState

NO_ACTIVITY_TEXT = "No activity today"


@dataclass(slots=True, frozen=True)
class Totals:
    current_activity_name: Optional[str]
    total_duration_minutes: int
    first_activity_time_of_day: Optional[datetime]


def summarize(state: SessionState, now: datetime) -> Totals:
    """Stored total plus the active session's elapsed whole minutes."""
    total = state.total_minutes
    current: Optional[str] = None
    if state.active_session is not None:
        current = state.active_session.activity_name
        total += state.active_session.elapsed_minutes(now)
    return Totals(
        current_activity_name=current,
        total_duration_minutes=total,
        first_activity_time_of_day=state.first_activity_time,
    )


def format_duration(minutes: int) -> str:
    if minutes <= 0:
        return NO_ACTIVITY_TEXT
    hours, mins = divmod(int(minutes), 60)
    if hours:
        return f"{hours} h {mins} min"
    return f"{mins} min"


def format_time_of_day(value: Optional[datetime]) -> str:
    if value is None:
        return NO_ACTIVITY_TEXT
    return value.strftime("%H:%M")
