"""FastAPI application that exposes the engine's handle to UI callers."""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .engine import SessionEngine
from .lifecycle import LifecycleEvent
from .models import Session
from .store import day_log_key, decode_day_log

logger = logging.getLogger(__name__)

EngineFactory = Callable[[], SessionEngine]


def create_app(
    *,
    engine_factory: EngineFactory,
    start_engine: bool = True,
) -> FastAPI:
    """Instantiate the FastAPI application around a session engine."""
    engine = engine_factory()

    app = FastAPI(title="Session Tracker", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.engine = engine

    @app.on_event("startup")
    async def _startup() -> None:
        if start_engine:
            await engine.start()
        else:
            await engine.recover()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await engine.shutdown()

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        display = request.app.state.engine.display
        return {
            "current_activity_name": display.current_activity_name,
            "first_activity_time_of_day": display.first_activity_time_of_day,
            "total_duration_minutes": display.total_duration_minutes,
            "total_duration_text": display.total_duration_text,
            "is_loading": display.is_loading,
            "last_error": display.last_error,
            "poll_in_flight": request.app.state.engine.scheduler.in_flight,
        }

    @app.get("/api/diagnostics")
    def diagnostics(request: Request) -> Dict[str, Any]:
        try:
            raw = request.app.state.engine.diagnostics()
        except RuntimeError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {
            "active_session": _session_payload(raw.active_session),
            "completed_sessions": [
                _session_payload(session) for session in raw.completed_sessions
            ],
            "total_minutes": raw.total_minutes,
        }

    @app.post("/api/lifecycle/{event}")
    async def lifecycle(event: str, request: Request) -> Dict[str, Any]:
        try:
            parsed = LifecycleEvent(event)
        except ValueError as exc:
            raise HTTPException(
                status_code=400, detail="event must be foreground or background"
            ) from exc
        await request.app.state.engine.handle_lifecycle(parsed)
        return {"event": parsed.value, "handled": True}

    @app.get("/api/days/{day}")
    async def day_log(day: str, request: Request) -> Dict[str, Any]:
        target = _parse_date(day)
        engine: SessionEngine = request.app.state.engine
        payload = await engine.store.read(day_log_key(target))
        record = decode_day_log(payload)
        if record is None:
            raise HTTPException(status_code=404, detail="No sessions stored for that day")
        return record.model_dump(mode="json")

    return app


def _parse_date(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid date format") from exc


def _session_payload(session: Optional[Session]) -> Optional[Dict[str, Any]]:
    if session is None:
        return None
    payload = asdict(session)
    payload["start_time"] = session.start_time.isoformat()
    payload["end_time"] = session.end_time.isoformat() if session.end_time else None
    return payload
