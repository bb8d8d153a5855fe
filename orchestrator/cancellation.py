"""
orchestrator/cancellation.py — Cooperative Cancellation Token

One token per pool task. The pool fires it on kill() or shutdown; the
agent loop checks it at every checkpoint and the pool races the running
call against wait().

Usage:
    token = CancellationToken()
    token.cancel()
    token.raise_if_cancelled(task_id)   # raises TaskCancelledError
"""

from __future__ import annotations

import asyncio

from exceptions import TaskCancelledError


class CancellationToken:

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        """Signal cancellation. Idempotent."""
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        """Block until cancel() is called."""
        await self._event.wait()

    def raise_if_cancelled(self, task_id: str = "") -> None:
        if self._event.is_set():
            raise TaskCancelledError(task_id)

    def __repr__(self) -> str:
        return f"<CancellationToken cancelled={self.is_cancelled}>"
