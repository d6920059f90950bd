"""Configuration models and helpers for the session tracker."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional


STEAM_API_KEY_ENV = "SESSION_TRACKER_STEAM_API_KEY"
STEAM_ID_ENV = "SESSION_TRACKER_STEAM_ID"


@dataclass(slots=True)
class EngineSettings:
    """Runtime configuration for the session engine."""

    poll_interval: timedelta = timedelta(seconds=60)
    min_session: timedelta = timedelta(minutes=1)
    backfill_cap: timedelta = timedelta(minutes=60)
    # None keeps a session open across any gap between two matching polls.
    continuity_gap: Optional[timedelta] = None
    request_timeout: timedelta = timedelta(seconds=10)

    @property
    def min_session_minutes(self) -> int:
        return max(int(self.min_session.total_seconds() // 60), 1)

    @property
    def backfill_cap_minutes(self) -> int:
        return int(self.backfill_cap.total_seconds() // 60)

    @classmethod
    def from_intervals(
        cls,
        poll_seconds: float,
        continuity_gap_minutes: float | None = None,
        backfill_cap_minutes: float | None = None,
        request_timeout_seconds: float | None = None,
    ) -> "EngineSettings":
        timeout = (
            request_timeout_seconds
            if request_timeout_seconds is not None
            else min(max(poll_seconds / 2, 5.0), 30.0)
        )
        cap = backfill_cap_minutes if backfill_cap_minutes is not None else 60.0
        return cls(
            poll_interval=timedelta(seconds=poll_seconds),
            backfill_cap=timedelta(minutes=cap),
            continuity_gap=(
                timedelta(minutes=continuity_gap_minutes)
                if continuity_gap_minutes is not None
                else None
            ),
            request_timeout=timedelta(seconds=timeout),
        )
