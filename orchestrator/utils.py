"""
orchestrator/utils.py — Background Task Helpers

Detached work (conversation summarization, key-fact extraction, discarded
in-flight model calls after a kill) runs through fire_and_forget() so its
failures are logged rather than lost.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from observability.logger import get_logger

log = get_logger(__name__)

# Strong references so the event loop cannot garbage-collect a running
# background task. Entries are removed in the done-callback.
_BG_TASKS: set[asyncio.Task] = set()


def fire_and_forget(coro, label: str = "bg_task") -> asyncio.Task:
    """
    Schedule `coro` as a background task and return it.

    Failures are logged under `label` and never re-raised.
    """
    task = asyncio.create_task(coro, name=label)
    _BG_TASKS.add(task)

    def _on_done(t: asyncio.Task) -> None:
        _BG_TASKS.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            log.warning(
                "bg_task.failed",
                label=label,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    task.add_done_callback(_on_done)
    return task


def pending_background_tasks() -> int:
    return len(_BG_TASKS)


async def wait_for_background_tasks(timeout: Optional[float] = None) -> None:
    """Wait for every background task scheduled so far (used at shutdown and in tests)."""
    tasks = list(_BG_TASKS)
    if not tasks:
        return
    _, pending = await asyncio.wait(tasks, timeout=timeout)
    if pending:
        log.warning("bg_task.wait_timeout", pending=len(pending), timeout=timeout)
