"""Simple reporting utilities for CLI output."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from .aggregator import format_duration, format_time_of_day, summarize
from .store import (
    ACTIVE_STATE_KEY,
    DayLogRecord,
    SessionRecord,
    SqliteStore,
    day_log_key,
    decode_active_state,
    decode_day_log,
    state_from_active_record,
)


class SummaryPrinter:
    """Render human-readable summaries of stored sessions in the console."""

    def __init__(self, store_path: Path) -> None:
        self.store_path = Path(store_path)

    def print_daily_summary(self, day: datetime) -> None:
        record = asyncio.run(self._load_day(day))
        if record is None or not record.sessions:
            print("No activity recorded for the selected day.")
            return

        print(f"Summary for {day.strftime('%Y-%m-%d')}")
        print("-" * 40)
        print(f"Total time:     {format_duration(record.total_minutes)}")
        print(f"First activity: {format_time_of_day(record.first_activity_time)}")
        print()

        top_entries = aggregate_by_activity(record.sessions)
        if top_entries:
            print("Top activities:")
            for name, minutes in top_entries[:5]:
                print(f"  {name:<30} {format_duration(minutes)}")

        print()
        print("Sessions:")
        for session in record.sessions:
            marker = " (estimated)" if session.is_estimated else ""
            print(
                f"  {session.start_time.strftime('%H:%M')}-"
                f"{session.end_time.strftime('%H:%M') if session.end_time else '--:--'}"
                f"  {session.activity_name[:40]:<40} {session.duration_minutes:>4} min{marker}"
            )

    def print_active_state(self, now: Optional[datetime] = None) -> None:
        now = now or datetime.now()
        payload = asyncio.run(self._load_key(ACTIVE_STATE_KEY))
        record = decode_active_state(payload)
        if record is None:
            print("No active state stored.")
            return

        state = state_from_active_record(record)
        totals = summarize(state, now)
        print(f"Last checked:    {state.last_checked_at.strftime('%Y-%m-%d %H:%M:%S')}")
        print(f"Current activity: {totals.current_activity_name or '(none)'}")
        print(f"Sessions today:  {len(state.completed_sessions)}")
        print(f"Total time:      {format_duration(totals.total_duration_minutes)}")

    async def _load_day(self, day: datetime) -> Optional[DayLogRecord]:
        return decode_day_log(await self._load_key(day_log_key(day)))

    async def _load_key(self, key: str) -> Optional[dict]:
        store = SqliteStore(self.store_path)
        try:
            return await store.read(key)
        finally:
            store.close()


def aggregate_by_activity(sessions: Iterable[SessionRecord]) -> list[tuple[str, int]]:
    totals: defaultdict[str, int] = defaultdict(int)
    for session in sessions:
        name = session.activity_name or "Unknown"
        totals[name] += session.duration_minutes
    return sorted(totals.items(), key=lambda item: item[1], reverse=True)
