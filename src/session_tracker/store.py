"""Key/JSON persistence for day logs and the active session state."""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
import sqlite3
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional, Protocol

from pydantic import (
    BaseModel,
    ConfigDict,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import StoreError
from .models import Session, SessionState, day_key

logger = logging.getLogger(__name__)


ACTIVE_STATE_KEY = "active_state"
DAY_LOG_PREFIX = "day_log:"
DATETIME_FMT = "%Y-%m-%d %H:%M:%S.%f"


def day_log_key(day: date | datetime) -> str:
    return f"{DAY_LOG_PREFIX}{day_key(day)}"


class PersistenceStore(Protocol):
    async def read(self, key: str) -> Optional[dict[str, Any]]: ...

    async def write(self, key: str, value: dict[str, Any]) -> None: ...


class MemoryStore:
    """Dict-backed store; values are round-tripped through JSON like SQLite's."""

    def __init__(self, initial: Optional[dict[str, Any]] = None) -> None:
        self._records: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self._records[key] = value if isinstance(value, str) else json.dumps(value)
        self.writes: list[str] = []

    async def read(self, key: str) -> Optional[dict[str, Any]]:
        raw = self._records.get(key)
        return _loads(key, raw) if raw is not None else None

    async def write(self, key: str, value: dict[str, Any]) -> None:
        self._records[key] = json.dumps(value)
        self.writes.append(key)

    def keys(self) -> list[str]:
        return sorted(self._records)


class SqliteStore:
    """SQLite-backed store. Statements run in a worker thread."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._conn = open_database(self.path, check_same_thread=False)
        self._lock = threading.Lock()

    async def read(self, key: str) -> Optional[dict[str, Any]]:
        raw = await asyncio.to_thread(self._read_raw, key)
        return _loads(key, raw) if raw is not None else None

    async def write(self, key: str, value: dict[str, Any]) -> None:
        payload = json.dumps(value)
        await asyncio.to_thread(self._write_raw, key, payload)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _read_raw(self, key: str) -> Optional[str]:
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT value FROM kv_records WHERE key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to read {key}: {exc}") from exc
        return row["value"] if row else None

    def _write_raw(self, key: str, payload: str) -> None:
        try:
            with self._lock:
                self._conn.execute(
                    """
                    INSERT INTO kv_records (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, payload, datetime.now().strftime(DATETIME_FMT)),
                )
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to write {key}: {exc}") from exc


def open_database(path: Path, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    initialize_schema(conn)
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS kv_records (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
    )


def _loads(key: str, raw: str) -> Optional[dict[str, Any]]:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring unparsable record %s", key)
        return None
    if not isinstance(value, dict):
        logger.warning("Ignoring non-object record %s", key)
        return None
    return value


def _require_naive(value: Optional[datetime]) -> Optional[datetime]:
    # Engine timestamps are naive local time.
    if value is not None and value.tzinfo is not None:
        raise ValueError("timestamps must be naive local time")
    return value


class SessionRecord(BaseModel):
    activity_id: str
    activity_name: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_minutes: int = 0
    is_estimated: bool = False

    model_config = ConfigDict(extra="ignore")

    @field_validator("start_time", "end_time")
    @classmethod
    def check_session_times(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _require_naive(value)

    @classmethod
    def from_session(cls, session: Session) -> "SessionRecord":
        return cls(
            activity_id=session.activity_id,
            activity_name=session.activity_name,
            start_time=session.start_time,
            end_time=session.end_time,
            duration_minutes=session.duration_minutes,
            is_estimated=session.is_estimated,
        )

    def to_session(self) -> Session:
        return Session(
            activity_id=self.activity_id,
            activity_name=self.activity_name,
            start_time=self.start_time,
            end_time=self.end_time,
            duration_minutes=self.duration_minutes,
            is_estimated=self.is_estimated,
        )


class _SessionTotals(BaseModel):
    sessions: list[SessionRecord]
    total_minutes: int
    first_activity_time: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("first_activity_time")
    @classmethod
    def check_first_activity(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _require_naive(value)

    @model_validator(mode="after")
    def check_totals(self) -> "_SessionTotals":
        for session in self.sessions:
            if session.end_time is None or session.duration_minutes < 1:
                raise ValueError("completed sessions need an end time and a duration")
        if sum(session.duration_minutes for session in self.sessions) != self.total_minutes:
            raise ValueError("total_minutes does not match sessions")
        return self


class DayLogRecord(_SessionTotals):
    date: dt.date


class ActiveStateRecord(_SessionTotals):
    active_session: Optional[SessionRecord] = None
    last_checked_at: datetime

    @field_validator("last_checked_at")
    @classmethod
    def check_last_checked(cls, value: datetime) -> datetime:
        return _require_naive(value)

    @model_validator(mode="after")
    def check_active(self) -> "ActiveStateRecord":
        if self.active_session is not None and self.active_session.end_time is not None:
            raise ValueError("active session must not be closed")
        return self


def encode_day_log(state: SessionState, day: Optional[date] = None) -> dict[str, Any]:
    record = DayLogRecord(
        date=day or state.last_checked_at.date(),
        sessions=[SessionRecord.from_session(s) for s in state.completed_sessions],
        total_minutes=state.total_minutes,
        first_activity_time=state.first_activity_time,
    )
    return record.model_dump(mode="json")


def encode_active_state(state: SessionState) -> dict[str, Any]:
    record = ActiveStateRecord(
        active_session=(
            SessionRecord.from_session(state.active_session)
            if state.active_session
            else None
        ),
        sessions=[SessionRecord.from_session(s) for s in state.completed_sessions],
        total_minutes=state.total_minutes,
        first_activity_time=state.first_activity_time,
        last_checked_at=state.last_checked_at,
    )
    return record.model_dump(mode="json")


def decode_day_log(payload: Optional[dict[str, Any]]) -> Optional[DayLogRecord]:
    if payload is None:
        return None
    try:
        return DayLogRecord.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Ignoring malformed day log: %s", exc.errors()[0]["msg"])
        return None


def decode_active_state(
    payload: Optional[dict[str, Any]],
) -> Optional[ActiveStateRecord]:
    if payload is None:
        return None
    try:
        return ActiveStateRecord.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Ignoring malformed active state: %s", exc.errors()[0]["msg"])
        return None


def state_from_active_record(record: ActiveStateRecord) -> SessionState:
    return SessionState(
        last_checked_at=record.last_checked_at,
        active_session=record.active_session.to_session() if record.active_session else None,
        completed_sessions=tuple(s.to_session() for s in record.sessions),
        total_minutes=record.total_minutes,
        first_activity_time=record.first_activity_time,
    )


def state_from_day_log(record: DayLogRecord, now: datetime) -> SessionState:
    return SessionState(
        last_checked_at=now,
        completed_sessions=tuple(s.to_session() for s in record.sessions),
        total_minutes=record.total_minutes,
        first_activity_time=record.first_activity_time,
    )


async def recover_state(store: PersistenceStore, now: datetime) -> SessionState:
    """Rebuild today's state from the store, falling back to a fresh one.

    Unreadable, malformed or stale records are treated as absent.
    """
    active = decode_active_state(await _read_or_none(store, ACTIVE_STATE_KEY))
    if active is not None:
        if day_key(active.last_checked_at) == day_key(now):
            logger.info("Recovered active state last checked at %s", active.last_checked_at)
            return state_from_active_record(active)
        logger.info(
            "Discarding active state from %s", day_key(active.last_checked_at)
        )

    day_log = decode_day_log(await _read_or_none(store, day_log_key(now)))
    if day_log is not None and day_log.date == now.date():
        logger.info("Recovered day log for %s", day_log.date)
        return state_from_day_log(day_log, now)

    return SessionState(last_checked_at=now)


async def _read_or_none(store: PersistenceStore, key: str) -> Optional[dict[str, Any]]:
    try:
        return await store.read(key)
    except StoreError as exc:
        logger.warning("Ignoring unreadable record %s: %s", key, exc)
        return None


async def persist_state(
    store: PersistenceStore, state: SessionState, day: Optional[date] = None
) -> None:
    """Write the day log, then the active state."""
    await store.write(day_log_key(day or state.last_checked_at), encode_day_log(state, day))
    await store.write(ACTIVE_STATE_KEY, encode_active_state(state))
