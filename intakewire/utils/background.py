"""
Fire-and-forget helpers for request handlers.

asyncio only keeps weak references to tasks, so detached work is held in a
module-level set until it finishes. Failures are logged, never raised into
the caller.
"""
import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)

_background_tasks: set[asyncio.Task] = set()


def fire_and_forget(coro: Coroutine[Any, Any, Any], label: str) -> asyncio.Task:
    """Schedule a coroutine detached from the caller."""
    task = asyncio.create_task(coro, name=label)
    _background_tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def _on_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task %s failed: %s", task.get_name(), str(exc), exc_info=exc)


def pending_background_tasks() -> int:
    return len(_background_tasks)
