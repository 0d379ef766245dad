"""Tracked background tasks.

Realtime handlers mutate state synchronously and hand any network follow-up
(mark-as-read, key healing writes) to BackgroundTasks. Failures are logged,
never raised, and cancel_all() leaves nothing running.
"""

import asyncio
from collections.abc import Callable, Coroutine
from typing import Any

from rendezvous.logging import get_logger

logger = get_logger(__name__)


class BackgroundTasks:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task | None:
        """Schedule coro on the running loop and track it until done."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("background_task_without_loop", task=name)
            return None
        task = loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background_task_failed", task=task.get_name(), error=str(exc))

    async def drain(self) -> None:
        """Wait until every tracked task, including ones spawned meanwhile, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


def best_effort(event: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
    """Call a side-effect primitive, logging instead of raising on failure."""
    try:
        func(*args, **kwargs)
    except Exception as e:
        logger.warning(event, error=str(e), error_type=type(e).__name__)
        return False
    return True
