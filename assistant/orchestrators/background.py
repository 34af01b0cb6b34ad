"""Detached post-turn work (quality scoring, memory write-back, reflexion)."""

import asyncio
from typing import Awaitable, Set

import structlog

logger = structlog.get_logger(__name__)


class BackgroundTaskSupervisor:
    """
    Spawns coroutines as tracked tasks and logs their failures.

    Errors never propagate to the request that spawned the task.

    Usage:
        supervisor = BackgroundTaskSupervisor()
        supervisor.spawn(scorer.score(...), name="quality_score")
        await supervisor.drain()  # on shutdown or in tests
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("Background task cancelled", task=task.get_name())
            return
        error = task.exception()
        if error is not None:
            logger.error("Background task failed", task=task.get_name(), error=str(error))

    async def drain(self) -> None:
        """Wait for every task spawned so far, including ones spawned while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
