"""Periodic, single-flight driver for poll cycles."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PollScheduler:
    """Runs a poll cycle on a fixed interval and on demand.

    At most one cycle runs at a time. A trigger that arrives while a cycle is
    in flight is dropped rather than queued.
    """

    def __init__(
        self,
        cycle: Callable[[], Awaitable[None]],
        interval: float,
    ) -> None:
        self._cycle = cycle
        self.interval = interval
        self._in_flight: Optional[asyncio.Task[None]] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.dropped = 0

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    async def trigger(self) -> bool:
        """Run one cycle now; returns False if another cycle was already running."""
        if self.in_flight:
            self.dropped += 1
            logger.debug("Poll cycle already in flight; dropping trigger.")
            return False
        task = asyncio.ensure_future(self._cycle())
        self._in_flight = task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            task.cancel()
            raise
        except Exception:
            logger.exception("Poll cycle failed.")
        finally:
            if self._in_flight is task and task.done():
                self._in_flight = None
        return True

    async def run(self, stop_event: asyncio.Event) -> None:
        """Trigger immediately, then every interval until the event is set."""
        while not stop_event.is_set():
            await self.trigger()
            try:
                # Sleep in an interruptible manner.
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run(self._stop_event))
        logger.info("Poll scheduler started; interval %.0fs", self.interval)

    async def stop(self) -> None:
        """Cancel the pending timer and any in-flight cycle."""
        if self._stop_event:
            self._stop_event.set()
        tasks = [t for t in (self._task, self._in_flight) if t and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Poll cycle failed during shutdown.")
        self._task = None
        self._in_flight = None
        self._stop_event = None
