"""Bounded-concurrency background task runner."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger


class TaskRunner:
    """Run pipeline jobs in the background, at most ``max_concurrency`` at a time.

    Jobs are fire-and-forget from the caller's point of view: errors are
    logged here and communicated through the record's status.
    """

    def __init__(self, max_concurrency: int = 8) -> None:
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    def submit(
        self,
        name: str,
        job: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> asyncio.Task[Any]:
        if self._closed:
            raise RuntimeError("TaskRunner is shut down")

        async def _run() -> Any:
            async with self._semaphore:
                try:
                    return await job(*args)
                except Exception:
                    logger.exception("Background job {name} failed", name=name)
                    return None

        task = asyncio.create_task(_run(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("Queued background job {name}", name=name)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every queued job, including jobs queued while draining."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 30.0) -> None:
        self._closed = True
        if not self._tasks:
            return
        logger.info("Waiting for {n} background jobs", n=len(self._tasks))
        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Cancelling {n} unfinished background jobs", n=len(self._tasks))
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
