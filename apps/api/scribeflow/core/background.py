"""Supervision for fire-and-forget asyncio tasks started by request handlers."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any

logger = logging.getLogger(__name__)

# Strong references keep running tasks from being garbage collected.
_background_tasks: set[asyncio.Task[Any]] = set()


def spawn(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str,
) -> asyncio.Task[Any]:
    """Schedule ``coro`` and log its failure instead of dropping it silently."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)

    def _finished(done: asyncio.Task[Any]) -> None:
        _background_tasks.discard(done)
        if done.cancelled():
            logger.info("background.cancelled task=%s", name)
            return
        exc = done.exception()
        if exc is None:
            return
        logger.error("background.failed task=%s reason=%s", name, type(exc).__name__, exc_info=exc)

    task.add_done_callback(_finished)
    return task


def running_tasks() -> frozenset[asyncio.Task[Any]]:
    return frozenset(_background_tasks)
