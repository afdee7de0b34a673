"""Fire-and-forget execution of side effects off the request path."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    """Runs coroutines as tasks whose failures are logged, never raised.

    Strong references are kept until each task finishes so the event loop
    cannot garbage-collect a pending task.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_completion)
        return task

    def _on_completion(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug("Background task cancelled: %s", task.get_name())
            return
        exception = task.exception()
        if exception is not None:
            logger.warning(
                "Background task failed: %s: %s",
                task.get_name(),
                exception,
                exc_info=exception,
            )

    async def drain(self) -> None:
        """Wait for every task spawned so far to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
