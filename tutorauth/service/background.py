"""Fire-and-forget work that must never delay or fail the response.

Inside a request the scheduler defers jobs to Starlette ``BackgroundTasks``
so they run after the response is sent. Outside a request it detaches
``asyncio`` tasks and keeps strong references until they finish. Every job
logs its own failure.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Optional, Set, TypeVar

from starlette.background import BackgroundTasks

from tutorauth.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def run_blocking(fn: Callable[..., T], *args: Any, timeout: float) -> T:
    """Run a blocking call in a worker thread with an upper bound on the wait."""

    return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)


class BackgroundScheduler:
    def __init__(self, background_tasks: Optional[BackgroundTasks] = None) -> None:
        self.background_tasks = background_tasks
        self._pending: Set[asyncio.Task] = set()

    async def _guarded(self, label: str, fn: Callable[..., Any], *args: Any) -> None:
        try:
            if inspect.iscoroutinefunction(fn):
                await fn(*args)
            else:
                await asyncio.to_thread(fn, *args)
        except Exception as exc:
            logger.error(
                "background_task_failed",
                task=label,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def schedule(self, label: str, fn: Callable[..., Any], *args: Any) -> None:
        if self.background_tasks is not None:
            self.background_tasks.add_task(self._guarded, label, fn, *args)
            return
        task = asyncio.get_running_loop().create_task(self._guarded(label, fn, *args))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for detached jobs; used at shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending))


__all__ = ["BackgroundScheduler", "run_blocking"]
