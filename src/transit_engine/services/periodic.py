"""Background loops for the real-time poll and the static freshness check."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs an async callable every `interval` seconds until stopped.

    A failing iteration is logged and the loop carries on.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Awaitable[Any]]):
        self.name = name
        self.interval = interval
        self._func = func
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while True:
            try:
                await self._func()
            except Exception as e:
                logger.error(f"{self.name} iteration failed: {e}")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info(f"{self.name} started (every {self.interval:g}s)")

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        self._task = None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"{self.name} stopped")
