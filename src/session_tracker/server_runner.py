"""Helpers to launch the HTTP handle for UI callers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import uvicorn

from .config import EngineSettings
from .engine import SessionEngine
from .paths import get_store_path
from .presence import PresenceSource
from .store import SqliteStore
from .webapp import create_app


def run_dashboard(
    *,
    source: Optional[PresenceSource],
    host: str = "127.0.0.1",
    port: int = 8765,
    store_path: Optional[Path] = None,
    settings: Optional[EngineSettings] = None,
    log_level: str = "info",
) -> None:
    """Start the FastAPI handle with the engine polling in the background."""
    store = SqliteStore(store_path or get_store_path())

    def engine_factory() -> SessionEngine:
        return SessionEngine(source, store, settings or EngineSettings())

    app = create_app(engine_factory=engine_factory)

    logging.getLogger("uvicorn.error").setLevel(log_level.upper())
    try:
        uvicorn.run(app, host=host, port=port, log_level=log_level)
    finally:
        store.close()
