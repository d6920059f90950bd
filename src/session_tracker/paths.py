"""Helpers for locating the tracker's data files."""

from __future__ import annotations

import os
from pathlib import Path

from platformdirs import PlatformDirs


APP_NAME = "SessionTracker"
APP_AUTHOR = "SessionTracker"
HOME_ENV = "SESSION_TRACKER_HOME"


def get_data_dir() -> Path:
    """Return the directory holding the session store and logs.

    ``SESSION_TRACKER_HOME`` overrides the per-user platform directory, which
    is handy when several linked accounts are tracked on one machine.
    """
    override = os.environ.get(HOME_ENV)
    if override:
        path = Path(override).expanduser()
    else:
        dirs = PlatformDirs(appname=APP_NAME, appauthor=APP_AUTHOR, roaming=True)
        path = Path(dirs.user_data_path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_store_path() -> Path:
    return get_data_dir() / "sessions.sqlite3"


def get_log_path() -> Path:
    return get_data_dir() / "tracker.log"
