"""Utilities to normalize activity identifiers and display names."""

from __future__ import annotations

import re
from typing import Optional

_EXECUTABLE_SUFFIXES: tuple[str, ...] = (".exe", ".app", ".x86_64", ".bin")

_TRADEMARK_PATTERN = re.compile(r"[®™©]")


def normalize_process_name(value: Optional[str]) -> Optional[str]:
    """Lower-case a process name and drop common executable suffixes."""
    if value is None:
        return None
    lowered = value.strip().lower()
    for suffix in _EXECUTABLE_SUFFIXES:
        if lowered.endswith(suffix):
            lowered = lowered[: -len(suffix)]
            break
    return lowered or None


def normalize_activity_name(value: Optional[str]) -> Optional[str]:
    """Strip trademark glyphs and collapse whitespace in a display name."""
    if not value:
        return None
    cleaned = _TRADEMARK_PATTERN.sub("", value)
    cleaned = re.sub(r"\s{2,}", " ", cleaned).strip()
    return cleaned or None


def normalize_activity_id(value: object) -> Optional[str]:
    """Presence APIs report ids as ints or strings; sessions key on strings."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None
