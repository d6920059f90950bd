"""Command-line interface for the session tracker."""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer

from .config import STEAM_API_KEY_ENV, STEAM_ID_ENV, EngineSettings
from .paths import get_log_path, get_store_path

app = typer.Typer(help="Reconstruct activity sessions from presence polls.")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


@app.callback(no_args_is_help=True)
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs."),
    log_to_file: bool = typer.Option(
        False, "--log-file", help="Also append logs to the tracker log file."
    ),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )
    if log_to_file:
        handler = logging.FileHandler(get_log_path(), encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


def _build_source(
    api_key: Optional[str],
    steam_id: Optional[str],
    watch: Optional[List[str]],
    settings: EngineSettings,
):
    if watch:
        from .presence import ProcessPresenceSource

        mapping: dict[str, str] = {}
        for entry in watch:
            process, _, name = entry.partition("=")
            if not process.strip():
                raise typer.BadParameter(f"Invalid watch entry: {entry!r}", param_hint="--watch")
            mapping[process.strip()] = name.strip() or process.strip()
        return ProcessPresenceSource(mapping)

    if api_key and steam_id:
        from .presence import SteamPresenceSource

        return SteamPresenceSource(api_key, steam_id, timeout=settings.request_timeout)
    return None


@app.command()
def run(
    store_path: Optional[Path] = typer.Option(
        None, "--store", path_type=Path, help="Location of the session SQLite store."
    ),
    api_key: Optional[str] = typer.Option(
        None, "--api-key", envvar=STEAM_API_KEY_ENV, help="Steam Web API key."
    ),
    steam_id: Optional[str] = typer.Option(
        None, "--steam-id", envvar=STEAM_ID_ENV, help="SteamID64 of the tracked account."
    ),
    watch: Optional[List[str]] = typer.Option(
        None,
        "--watch",
        help="Track a local process instead of Steam, as PROCESS=Activity name.",
    ),
    poll_seconds: float = typer.Option(
        60.0, "--interval", min=5.0, help="Poll interval in seconds."
    ),
    continuity_gap: Optional[float] = typer.Option(
        None,
        "--continuity-gap",
        min=1.0,
        help="Minutes without a poll after which an open session is ended at its last check.",
    ),
) -> None:
    """Poll presence and record sessions until interrupted."""
    from .engine import SessionEngine
    from .lifecycle import LifecycleMonitor, install_signal_handlers
    from .store import SqliteStore

    settings = EngineSettings.from_intervals(
        poll_seconds=poll_seconds, continuity_gap_minutes=continuity_gap
    )
    source = _build_source(api_key, steam_id, watch, settings)
    if source is None:
        typer.echo("No presence source configured; the engine will report it as unlinked.")

    async def _run() -> None:
        store = SqliteStore(store_path or get_store_path())
        monitor = LifecycleMonitor()
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        install_signal_handlers(monitor, loop)
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except (NotImplementedError, RuntimeError):
                pass
        try:
            async with SessionEngine(source, store, settings, lifecycle=monitor):
                await stop.wait()
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()
            store.close()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Interrupted; state was flushed on shutdown.")


@app.command()
def summary(
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Date (YYYY-MM-DD) to summarize. Defaults to today.",
    ),
    store_path: Optional[Path] = typer.Option(
        None, "--store", path_type=Path, help="Location of the session SQLite store."
    ),
) -> None:
    """Print the stored sessions for a specific day."""
    from .reporting import SummaryPrinter

    try:
        target = datetime.strptime(date, "%Y-%m-%d") if date else datetime.now()
    except ValueError as exc:
        raise typer.BadParameter("Expected YYYY-MM-DD", param_hint="--date") from exc
    SummaryPrinter(store_path=store_path or get_store_path()).print_daily_summary(target)


@app.command()
def status(
    store_path: Optional[Path] = typer.Option(
        None, "--store", path_type=Path, help="Location of the session SQLite store."
    ),
) -> None:
    """Print the last persisted active state."""
    from .reporting import SummaryPrinter

    SummaryPrinter(store_path=store_path or get_store_path()).print_active_state()


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the HTTP handle."),
    port: int = typer.Option(
        8765, "--port", min=1, max=65535, help="TCP port for the HTTP handle."
    ),
    store_path: Optional[Path] = typer.Option(
        None, "--store", path_type=Path, help="Location of the session SQLite store."
    ),
    api_key: Optional[str] = typer.Option(
        None, "--api-key", envvar=STEAM_API_KEY_ENV, help="Steam Web API key."
    ),
    steam_id: Optional[str] = typer.Option(
        None, "--steam-id", envvar=STEAM_ID_ENV, help="SteamID64 of the tracked account."
    ),
    poll_seconds: float = typer.Option(
        60.0, "--interval", min=5.0, help="Poll interval in seconds."
    ),
) -> None:
    """Serve display values and lifecycle endpoints while polling."""
    from .server_runner import run_dashboard

    settings = EngineSettings.from_intervals(poll_seconds=poll_seconds)
    run_dashboard(
        source=_build_source(api_key, steam_id, None, settings),
        host=host,
        port=port,
        store_path=store_path or get_store_path(),
        settings=settings,
    )
