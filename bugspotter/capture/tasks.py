from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Coroutine
from typing import Any

_LOGGER = logging.getLogger("bugspotter.capture.tasks")


class BackgroundTasks:
    """Tracks fire-and-forget coroutines so they can be drained or cancelled.

    This is the outermost boundary for detached work: an exception escaping a
    tracked coroutine is logged here and goes no further.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._done)
        return task

    def _done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.error("background_task_failed name=%s", task.get_name(), exc_info=exc)

    async def drain(self, *, max_rounds: int = 50) -> None:
        """Await in-flight tasks, including ones they spawn."""
        for _ in range(max_rounds):
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                # Let done-callbacks run before reporting empty.
                await asyncio.sleep(0)
                if not any(not t.done() for t in self._tasks):
                    return
                continue
            await asyncio.gather(*pending, return_exceptions=True)

    async def cancel_all(self) -> None:
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task


__all__ = ["BackgroundTasks"]
