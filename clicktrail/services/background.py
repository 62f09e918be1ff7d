"""Fire-and-forget tasks for attribution writes.

The visitor's redirect must never wait on storage. Writes run as detached
asyncio tasks; a done-callback logs failures so they surface in server logs
instead of disappearing (or crashing the request handler).
"""
from __future__ import annotations

import asyncio
import logging
from typing import Coroutine

logger = logging.getLogger(__name__)

# Strong references: the event loop only keeps weak references to tasks
_pending: set[asyncio.Task] = set()


def _observe(task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        logger.warning("Background task %s was cancelled", task.get_name())
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task %s failed: %s", task.get_name(), exc,
            exc_info=(type(exc), exc, exc.__traceback__),
        )


def fire_and_forget(coro: Coroutine, name: str) -> asyncio.Task:
    """Schedule coro without awaiting it. Failures are logged, never raised."""
    task = asyncio.create_task(coro, name=name)
    _pending.add(task)
    task.add_done_callback(_observe)
    return task


def pending_count() -> int:
    return len(_pending)


async def drain(timeout: float | None = None) -> None:
    """Wait for in-flight background tasks (shutdown, tests)."""
    while _pending:
        tasks = list(_pending)
        done, not_done = await asyncio.wait(tasks, timeout=timeout)
        for task in done:
            _pending.discard(task)
        if not_done:
            logger.warning("%d background tasks still running after %ss", len(not_done), timeout)
            return
