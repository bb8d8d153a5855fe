"""
orchestrator/task_pool.py — PocketClaw Task Pool

Bounded-concurrency scheduler for independent agent sessions. Runs up to
`max_concurrent` AgentLoop.process_message() calls at once, queues the
overflow in FIFO order, supports kill-by-id and drains on shutdown.

Each submission gets its own asyncio.Task and its own CancellationToken.
Killing a running task only fires the token: the caller's future rejects
with TaskCancelledError as soon as the race observes it, while the
in-flight model call is left to finish in the background and its result
is discarded.

All bookkeeping (settle, drain, kill) is synchronous, so the running
count never exceeds max_concurrent and no slot stays idle while work is
queued at any suspension point.

Usage:
    pool = TaskPool(agent_loop, max_concurrent=4)
    future = pool.submit("conv_1", "Summarize my inbox", ChannelType.CLI)
    result = await future
    await pool.shutdown()
"""

from __future__ import annotations

import asyncio
import dataclasses
import os
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Literal, Optional

from brain.types import ChannelType
from exceptions import PoolError, PoolShuttingDownError, TaskCancelledError
from observability.logger import get_logger
from orchestrator.agent_loop import AgentLoop
from orchestrator.cancellation import CancellationToken
from orchestrator.types import AgentLoopResult
from orchestrator.utils import fire_and_forget

log = get_logger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 30.0
_MAX_DEFAULT_CONCURRENCY = 4

KILLED_MESSAGE = "Task was killed"


def default_max_concurrent() -> int:
    return min(os.cpu_count() or 1, _MAX_DEFAULT_CONCURRENCY)


@dataclass
class TaskPoolEntry:
    task_id: str
    conversation_id: str
    user_message: str
    channel_type: str
    token: CancellationToken = field(default_factory=CancellationToken, repr=False)
    submitted_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    status: Literal["queued", "running"] = "queued"
    task: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)


@dataclass
class QueuedTask:
    """A pool entry plus the future its caller is waiting on."""
    entry: TaskPoolEntry
    future: asyncio.Future = field(repr=False)


@dataclass(frozen=True)
class TaskPoolStats:
    running: int
    pending: int
    completed: int
    max_concurrent: int


class TaskPool:
    """
    Runs agent sessions with at most `max_concurrent` in flight.

    State is owned by the instance, so several pools can coexist in one
    process. Must be used from inside a running event loop.
    """

    def __init__(
        self,
        agent_loop: AgentLoop,
        max_concurrent: Optional[int] = None,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
    ):
        if max_concurrent is not None and max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._agent_loop = agent_loop
        self._max_concurrent = max_concurrent or default_max_concurrent()
        self._shutdown_timeout = shutdown_timeout

        self._queue: deque[QueuedTask] = deque()
        self._running: dict[str, QueuedTask] = {}
        self._completed = 0
        self._shutting_down = False

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    # ── Submission ────────────────────────────────────────────────────────────

    def submit(
        self,
        conversation_id: str,
        user_message: str,
        channel_type: ChannelType | str,
        task_id: Optional[str] = None,
    ) -> asyncio.Future:
        """
        Submit one message for processing.

        Returns a future resolving to the AgentLoopResult. The future is
        rejected with PoolShuttingDownError after shutdown() began, with
        TaskCancelledError when the task is killed, and with PoolError for
        a task id that is already queued or running. Cancelling the
        returned future kills the task.
        """
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        task_id = task_id or f"pool_{uuid.uuid4().hex[:12]}"

        if self._shutting_down:
            log.warning("task_pool.submit_rejected", task_id=task_id, reason="shutting_down")
            future.set_exception(PoolShuttingDownError())
            return future

        if task_id in self._running or any(q.entry.task_id == task_id for q in self._queue):
            log.warning("task_pool.submit_rejected", task_id=task_id, reason="duplicate_id")
            future.set_exception(PoolError(f"Task id already in pool: {task_id}"))
            return future

        channel = channel_type.value if isinstance(channel_type, ChannelType) else str(channel_type)
        item = QueuedTask(
            entry=TaskPoolEntry(
                task_id=task_id,
                conversation_id=conversation_id,
                user_message=user_message,
                channel_type=channel,
            ),
            future=future,
        )
        future.add_done_callback(lambda f: self._on_future_done(task_id, f))

        if len(self._running) < self._max_concurrent:
            self._start(item)
        else:
            self._queue.append(item)
            log.info(
                "task_pool.task_queued",
                task_id=task_id,
                conversation_id=conversation_id,
                position=len(self._queue),
            )
        return future

    def _on_future_done(self, task_id: str, future: asyncio.Future) -> None:
        if future.cancelled():
            self.kill(task_id)

    # ── Kill / inspection ─────────────────────────────────────────────────────

    def kill(self, task_id: str) -> bool:
        """
        Kill a queued or running task.

        Queued tasks are removed and their future rejected right away.
        Running tasks only get their token fired; the future rejects once
        the execution race observes it. Returns False for an unknown id.
        """
        for item in self._queue:
            if item.entry.task_id == task_id:
                self._queue.remove(item)
                item.entry.token.cancel()
                self._reject(item, TaskCancelledError(task_id, KILLED_MESSAGE))
                log.info("task_pool.killed", task_id=task_id, status="queued")
                return True

        item = self._running.get(task_id)
        if item is not None:
            item.entry.token.cancel()
            log.info("task_pool.killed", task_id=task_id, status="running")
            return True

        log.debug("task_pool.kill_unknown", task_id=task_id)
        return False

    def get_running(self) -> list[TaskPoolEntry]:
        """Snapshot of the running entries. Mutating it does not affect the pool."""
        return [dataclasses.replace(item.entry) for item in self._running.values()]

    def get_pending_count(self) -> int:
        return len(self._queue)

    def get_stats(self) -> TaskPoolStats:
        return TaskPoolStats(
            running=len(self._running),
            pending=len(self._queue),
            completed=self._completed,
            max_concurrent=self._max_concurrent,
        )

    # ── Execution ─────────────────────────────────────────────────────────────

    def _start(self, item: QueuedTask) -> None:
        entry = item.entry
        entry.status = "running"
        entry.started_at = time.time()
        self._running[entry.task_id] = item
        entry.task = asyncio.create_task(self._execute(item), name=f"pool:{entry.task_id}")
        log.info(
            "task_pool.task_started",
            task_id=entry.task_id,
            conversation_id=entry.conversation_id,
            running=len(self._running),
        )

    async def _execute(self, item: QueuedTask) -> None:
        entry = item.entry
        try:
            result = await self._run_with_cancellation(entry)
        except asyncio.CancelledError:
            self._settle(item, error=TaskCancelledError(entry.task_id))
            raise
        except Exception as e:
            self._settle(item, error=e)
        else:
            self._settle(item, result=result)

    async def _run_with_cancellation(self, entry: TaskPoolEntry) -> AgentLoopResult:
        """Race process_message() against the entry's token."""
        entry.token.raise_if_cancelled(entry.task_id)

        work = asyncio.ensure_future(self._agent_loop.process_message(
            entry.conversation_id,
            entry.user_message,
            entry.channel_type,
            cancellation_token=entry.token,
        ))
        cancelled = asyncio.ensure_future(entry.token.wait())

        try:
            done, _ = await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            cancelled.cancel()
            raise

        if work in done:
            cancelled.cancel()
            return work.result()

        # Token won: leave the in-flight call running and drop its result
        fire_and_forget(_discard(work, entry.task_id), label=f"discard:{entry.task_id}")
        raise TaskCancelledError(entry.task_id)

    def _settle(
        self,
        item: QueuedTask,
        result: Optional[AgentLoopResult] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        """Remove a finished task, resolve its future, then promote queued work."""
        entry = item.entry
        self._running.pop(entry.task_id, None)
        self._completed += 1

        if error is None:
            log.info(
                "task_pool.task_completed",
                task_id=entry.task_id,
                status=result.status.value if result else None,
                ms=round((time.time() - (entry.started_at or entry.submitted_at)) * 1000),
            )
            if not item.future.done():
                item.future.set_result(result)
        else:
            log.warning(
                "task_pool.task_failed",
                task_id=entry.task_id,
                error=str(error),
                error_type=type(error).__name__,
            )
            self._reject(item, error)

        self._drain()

    def _drain(self) -> None:
        while self._queue and len(self._running) < self._max_concurrent:
            item = self._queue.popleft()
            if item.future.done():
                continue
            if item.entry.token.is_cancelled:
                self._reject(item, TaskCancelledError(item.entry.task_id, KILLED_MESSAGE))
                continue
            self._start(item)

    @staticmethod
    def _reject(item: QueuedTask, error: BaseException) -> None:
        if not item.future.done():
            item.future.set_exception(error)

    # ── Shutdown ──────────────────────────────────────────────────────────────

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop accepting work, reject the queue, and wait for running tasks.

        Running tasks get `timeout` seconds (default: the pool's
        shutdown_timeout) to settle on their own. Whatever is still running
        afterwards has its token fired and is awaited until it settles.
        """
        if timeout is None:
            timeout = self._shutdown_timeout
        self._shutting_down = True

        rejected = 0
        while self._queue:
            item = self._queue.popleft()
            item.entry.token.cancel()
            self._reject(item, PoolShuttingDownError())
            rejected += 1

        log.info("task_pool.shutdown_started", running=len(self._running), rejected=rejected)

        tasks = [item.entry.task for item in self._running.values() if item.entry.task]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                log.warning("task_pool.shutdown_timeout", pending=len(pending), timeout=timeout)
                for item in list(self._running.values()):
                    item.entry.token.cancel()
                await asyncio.wait(pending)

        log.info("task_pool.shutdown_complete", completed=self._completed)

    # ── Factory ───────────────────────────────────────────────────────────────

    @classmethod
    def from_settings(cls, agent_loop: AgentLoop, settings) -> "TaskPool":
        return cls(
            agent_loop=agent_loop,
            max_concurrent=settings.pool.max_concurrent,
            shutdown_timeout=settings.pool.shutdown_timeout_seconds,
        )

    def __repr__(self) -> str:
        return (
            f"<TaskPool running={len(self._running)} pending={len(self._queue)} "
            f"max_concurrent={self._max_concurrent}>"
        )


async def _discard(work: asyncio.Future, task_id: str) -> None:
    """Await an abandoned process_message() call and drop its outcome."""
    try:
        await work
    except TaskCancelledError:
        return
    log.debug("task_pool.discarded_result", task_id=task_id)
