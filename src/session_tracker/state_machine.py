"""Pure transitions that merge presence snapshots into sessions.

Every function here takes a :class:`SessionState` and returns a new one; none
of them perform I/O or read the clock. The engine owns the only live state and
swaps it for the returned value in a single assignment, so a persistence flush
always sees either the previous state or the next one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .config import EngineSettings
from .models import RecentActivity, Session, SessionState, Snapshot, whole_minutes

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Transition:
    state: SessionState
    closed_session: Optional[Session] = None
    opened_session: Optional[Session] = None


def fresh_state(now: datetime) -> SessionState:
    return SessionState(last_checked_at=now)


def start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def step(
    state: SessionState,
    snapshot: Snapshot,
    now: datetime,
    settings: EngineSettings,
) -> Transition:
    """Apply one snapshot observed at ``now`` to ``state``."""
    active = state.active_session
    closed: Optional[Session] = None

    if active is not None and _gap_exceeded(state, now, settings):
        # Not observed since the last check; trust only what was seen.
        logger.info(
            "Presence gap of %s exceeds continuity window; closing %s at %s",
            now - state.last_checked_at,
            active.activity_name,
            state.last_checked_at,
        )
        state, closed = _close(state, state.last_checked_at, settings)
        active = None

    if active is not None:
        if snapshot.is_active and active.matches(snapshot):
            return Transition(replace(state, last_checked_at=now), closed)
        state, closed = _close(state, now, settings)

    opened: Optional[Session] = None
    if snapshot.is_active:
        opened = Session(
            activity_id=snapshot.activity_id or "",
            activity_name=snapshot.activity_name or "",
            start_time=now,
        )
        state = replace(
            state,
            active_session=opened,
            first_activity_time=state.first_activity_time or now,
        )
        logger.info("Opened session for %s", opened.activity_name)

    return Transition(replace(state, last_checked_at=now), closed, opened)


def close_active(
    state: SessionState, now: datetime, settings: EngineSettings
) -> Transition:
    """Close the active session as if an idle snapshot had just been seen."""
    if state.active_session is None:
        return Transition(state)
    closed_state, closed = _close(state, now, settings)
    return Transition(replace(closed_state, last_checked_at=now), closed)


def needs_backfill(state: SessionState) -> bool:
    return state.is_empty


def apply_backfill(
    state: SessionState,
    recent: Iterable[RecentActivity],
    now: datetime,
    settings: EngineSettings,
) -> Transition:
    """Synthesize one estimated session from a recent-activity report.

    Only an empty day qualifies. Once any session, active or estimated, exists
    the precondition fails and nothing more is synthesized for that day.
    """
    if not needs_backfill(state):
        return Transition(state)

    day_start = start_of_day(now)
    candidates = [
        record
        for record in recent
        if record.recent_minutes > 0
        and day_start <= record.last_observed_at <= now
    ]
    if not candidates:
        return Transition(state)

    record = max(candidates, key=lambda item: item.last_observed_at)
    minutes = min(record.recent_minutes, settings.backfill_cap_minutes)
    start = max(record.last_observed_at - timedelta(minutes=minutes), day_start)
    duration = whole_minutes(start, record.last_observed_at)
    if duration < settings.min_session_minutes:
        return Transition(state)

    estimated = Session(
        activity_id=record.activity_id,
        activity_name=record.activity_name,
        start_time=start,
        end_time=record.last_observed_at,
        duration_minutes=duration,
        is_estimated=True,
    )
    logger.info(
        "Backfilled estimated %d minute session for %s",
        duration,
        record.activity_name,
    )
    return Transition(
        replace(
            state,
            completed_sessions=state.completed_sessions + (estimated,),
            total_minutes=state.total_minutes + duration,
            first_activity_time=start,
        ),
        closed_session=estimated,
    )


def roll_over(
    state: SessionState, now: datetime, settings: EngineSettings
) -> tuple[SessionState, SessionState]:
    """Split state at the start of ``now``'s day.

    Returns the final state of the previous day and the seed state for the
    new one. An activity still running at midnight is closed at midnight and
    continued from midnight in the new day, unless the continuity gap says it
    was last seen too long ago, in which case it ends at its last observation.
    Nothing is carried when more than one midnight has passed. A carried
    session also sets the new day's first activity time to midnight.
    """
    day_start = start_of_day(now)
    active = state.active_session
    if active is not None and _gap_exceeded(state, now, settings):
        previous, _ = _close(state, state.last_checked_at, settings)
        return previous, fresh_state(day_start)

    day_end = start_of_day(state.last_checked_at) + timedelta(days=1)
    previous, _ = _close(state, min(day_end, day_start), settings)
    seed = fresh_state(day_start)
    if active is not None and day_end == day_start:
        carried = replace(
            active, start_time=day_start, end_time=None, duration_minutes=0
        )
        seed = replace(seed, active_session=carried, first_activity_time=day_start)
    return previous, seed


def _gap_exceeded(
    state: SessionState, now: datetime, settings: EngineSettings
) -> bool:
    gap = settings.continuity_gap
    return gap is not None and now - state.last_checked_at > gap


def _close(
    state: SessionState, end: datetime, settings: EngineSettings
) -> tuple[SessionState, Optional[Session]]:
    active = state.active_session
    if active is None:
        return state, None

    duration = whole_minutes(active.start_time, end)
    if duration < settings.min_session_minutes:
        logger.debug(
            "Discarding %s session shorter than %d minute(s)",
            active.activity_name,
            settings.min_session_minutes,
        )
        return replace(state, active_session=None), None

    closed = replace(active, end_time=end, duration_minutes=duration)
    logger.info("Closed %s session after %d minutes", closed.activity_name, duration)
    return (
        replace(
            state,
            active_session=None,
            completed_sessions=state.completed_sessions + (closed,),
            total_minutes=state.total_minutes + duration,
        ),
        closed,
    )
