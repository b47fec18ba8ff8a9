from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Awaitable, Coroutine, Optional, Set

from rbacauth.logging import get_logger

logger = get_logger(__name__)


class BackgroundDispatcher:
    """Fire-and-forget runner for session bookkeeping and audit writes.

    Submitted coroutines run as tasks on the current loop; failures are
    logged from a done callback and never reach the caller.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Coroutine[Any, Any, Any], *, label: str = "background") -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Called from synchronous code (operator scripts); run inline
            try:
                asyncio.run(coro)
            except Exception as exc:
                logger.error("background_task_failed", label=label, error=str(exc))
            return None

        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(t, label))
        return task

    def _finished(self, task: asyncio.Task, label: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "background_task_failed",
                label=label,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding work, including tasks submitted while draining."""
        while self._tasks:
            pending: list[Awaitable[Any]] = list(self._tasks)
            done, not_done = await asyncio.wait(pending, timeout=timeout)
            self._tasks.difference_update(done)
            if not_done:
                logger.warning("background_drain_timeout", pending=len(not_done))
                return

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._tasks.clear()
        if tasks:
            logger.info("background_tasks_cancelled", count=len(tasks))
