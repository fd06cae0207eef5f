from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine


logger = logging.getLogger(__name__)

# Strong references so pending follow-ups are not garbage collected mid-flight.
_pending: set[asyncio.Task[Any]] = set()


def spawn(coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
    # Track the task until it finishes so the loop keeps a strong reference.
    task = asyncio.create_task(coro, name=name)
    _pending.add(task)
    task.add_done_callback(_on_done)
    return task


def _on_done(task: asyncio.Task[Any]) -> None:
    # Failures in follow-ups are logged and never re-raised.
    _pending.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("background_task_failed name=%s", task.get_name(), exc_info=exc)


async def drain(timeout_s: float = 5.0) -> None:
    # Used on shutdown and in tests to let follow-ups settle.
    if not _pending:
        return
    await asyncio.wait(set(_pending), timeout=timeout_s)


def pending_count() -> int:
    return len(_pending)
