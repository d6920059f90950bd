"""Foreground/background transitions reported by the host process."""

from __future__ import annotations

import asyncio
import enum
import logging
import signal
from typing import AsyncIterator, Optional

logger = logging.getLogger(__name__)


class LifecycleEvent(str, enum.Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


_CLOSED = object()


class LifecycleMonitor:
    """Turns raw state reports into a stream of distinct transitions."""

    def __init__(self, initial: LifecycleEvent = LifecycleEvent.FOREGROUND) -> None:
        self._current = initial
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    @property
    def current(self) -> LifecycleEvent:
        return self._current

    def publish(self, event: LifecycleEvent) -> bool:
        """Record a reported state; returns False when it is not a transition."""
        if self._closed or event == self._current:
            return False
        logger.debug("Lifecycle transition %s -> %s", self._current.value, event.value)
        self._current = event
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def events(self) -> AsyncIterator[LifecycleEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            assert isinstance(item, LifecycleEvent)
            yield item


def install_signal_handlers(
    monitor: LifecycleMonitor,
    loop: Optional[asyncio.AbstractEventLoop] = None,
) -> bool:
    """Map SIGUSR1 to background and SIGUSR2 to foreground on POSIX hosts."""
    sigusr1 = getattr(signal, "SIGUSR1", None)
    sigusr2 = getattr(signal, "SIGUSR2", None)
    if sigusr1 is None or sigusr2 is None:
        return False
    loop = loop or asyncio.get_running_loop()
    try:
        loop.add_signal_handler(sigusr1, monitor.publish, LifecycleEvent.BACKGROUND)
        loop.add_signal_handler(sigusr2, monitor.publish, LifecycleEvent.FOREGROUND)
    except NotImplementedError:
        logger.info("Lifecycle signals are not supported on this event loop.")
        return False
    return True
