"""
orchestrator/ — PocketClaw Concurrent Task Orchestration

Public API:
    from orchestrator import AgentLoop, TaskPool, CancellationToken
"""

from orchestrator.agent_loop import AgentLoop
from orchestrator.cancellation import CancellationToken
from orchestrator.task_pool import QueuedTask, TaskPool, TaskPoolEntry, TaskPoolStats
from orchestrator.types import (
    AgentLoopResult,
    KillConditionConfig,
    LoopState,
    SessionState,
    TerminalState,
    TokenCounts,
)

__all__ = [
    "AgentLoop",
    "AgentLoopResult",
    "CancellationToken",
    "KillConditionConfig",
    "LoopState",
    "QueuedTask",
    "SessionState",
    "TaskPool",
    "TaskPoolEntry",
    "TaskPoolStats",
    "TerminalState",
    "TokenCounts",
]
