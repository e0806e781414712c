from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None] | None]


class PeriodicTask:
    """A cancellable repeating asyncio task: sleep, then run the callback."""

    def __init__(self, name: str, interval_seconds: float, callback: TimerCallback) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"Timer {name} needs a positive interval, got {interval_seconds}")
        self.name = name
        self.interval_seconds = interval_seconds
        self.callback = callback
        self._task: asyncio.Task[None] | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.ticks += 1
            try:
                outcome = self.callback()
                if inspect.isawaitable(outcome):
                    await outcome
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Timer %s callback failed", self.name)
