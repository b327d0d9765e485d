"""Fixed-interval background task on the asyncio loop."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from app.logging_utils import log_event

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``fn`` every ``interval_seconds`` until stopped.

    A failing tick is logged and the loop carries on; the sweep gets another
    chance on the next interval.
    """

    def __init__(self, name: str, interval_seconds: float, fn: Callable[[], Awaitable]):
        self.name = name
        self._interval = interval_seconds
        self._fn = fn
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break

            try:
                await self._fn()
            except asyncio.CancelledError:
                break
            except Exception as e:
                log_event(
                    logger,
                    logging.ERROR,
                    "periodic_task_failed",
                    task=self.name,
                    error=f"{type(e).__name__}: {e}",
                )
