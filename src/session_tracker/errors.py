"""Exceptions raised by the session tracker."""

from __future__ import annotations


class SessionTrackerError(Exception):
    """Base class for session tracker failures."""


class PresenceError(SessionTrackerError):
    """A presence lookup failed; the next scheduled poll retries it."""


class StoreError(SessionTrackerError):
    """Persisting a record failed."""
