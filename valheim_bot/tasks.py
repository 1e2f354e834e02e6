from __future__ import annotations

import asyncio
import logging
from typing import Coroutine, Optional

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Owns the tasks that outlive the request which started them.

    Every task is tracked until it finishes, bounded by ``timeout`` seconds and
    has its failure logged. ``shutdown`` cancels whatever is still running.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, name: str, timeout: Optional[float] = None) -> asyncio.Task:
        if timeout is not None:
            coro = asyncio.wait_for(coro, timeout)
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if isinstance(exc, asyncio.TimeoutError):
            logger.error("Background task %s exceeded its time limit", task.get_name())
        elif exc is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    async def wait(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, grace: float = 5.0) -> None:
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=grace)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
