"""
orchestrator/types.py — Agent Loop & Task Pool Data Models

Result and configuration types shared by the agent loop, the task pool
and every caller that relays results to a channel.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class TerminalState(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"


class LoopState(str, Enum):
    """Where a single process_message() run currently is."""
    INIT = "init"
    SANITIZING = "sanitizing"
    TASK_CREATED = "task_created"
    BUDGET_CHECKED = "budget_checked"
    MODEL_ROUTED = "model_routed"
    CONTEXT_BUILT = "context_built"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"


@dataclass(frozen=True)
class TokenCounts:
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output


@dataclass(frozen=True)
class AgentLoopResult:
    """
    Outcome of one process_message() call. Produced exactly once per call.

    response_text is always safe to relay verbatim to the user, including
    on failed and killed runs.
    """
    response_text: str
    tokens_used: TokenCounts = field(default_factory=TokenCounts)
    cost_usd: float = 0.0
    tool_call_count: int = 0
    round_trips: int = 0
    status: TerminalState = TerminalState.COMPLETED
    task_id: Optional[str] = None       # None when no task record was created

    @property
    def succeeded(self) -> bool:
        return self.status == TerminalState.COMPLETED


# ─────────────────────────────────────────────────────────────────────────────
# Kill conditions
# ─────────────────────────────────────────────────────────────────────────────

DEFAULT_MAX_ROUND_TRIPS = 20
DEFAULT_MAX_TOKENS_PER_TASK = 50_000
DEFAULT_MAX_DURATION_MS = 300_000       # 5 minutes
DEFAULT_MAX_CONSECUTIVE_ERRORS = 3
DEFAULT_TASK_BUDGET_USD = 0.50


@dataclass(frozen=True)
class KillConditionConfig:
    """
    Runaway-task limits enforced by every AgentLoop run.

    enabled_providers=None means "only the injected provider".
    """
    max_round_trips: int = DEFAULT_MAX_ROUND_TRIPS
    max_tokens_per_task: int = DEFAULT_MAX_TOKENS_PER_TASK
    max_duration_ms: int = DEFAULT_MAX_DURATION_MS
    max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS
    task_budget_usd: float = DEFAULT_TASK_BUDGET_USD
    enabled_providers: Optional[tuple[str, ...]] = None

    @classmethod
    def from_settings(cls, settings) -> "KillConditionConfig":
        agent = settings.agent
        return cls(
            max_round_trips=agent.max_round_trips,
            max_tokens_per_task=agent.max_tokens_per_task,
            max_duration_ms=agent.max_duration_ms,
            max_consecutive_errors=agent.max_consecutive_errors,
            task_budget_usd=agent.task_budget_usd,
            enabled_providers=tuple(settings.enabled_providers),
        )


# ─────────────────────────────────────────────────────────────────────────────
# Call-local execution state
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class SessionState:
    """Mutable counters for one process_message() run. Never persisted."""
    start_time: float
    state: LoopState = LoopState.INIT
    task_id: Optional[str] = None
    round_trips: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost_usd: float = 0.0
    tool_call_count: int = 0
    consecutive_errors: int = 0

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens

    def to_result(self, response_text: str, status: TerminalState) -> AgentLoopResult:
        return AgentLoopResult(
            response_text=response_text,
            tokens_used=TokenCounts(input=self.total_input_tokens, output=self.total_output_tokens),
            cost_usd=self.total_cost_usd,
            tool_call_count=self.tool_call_count,
            round_trips=self.round_trips,
            status=status,
            task_id=self.task_id,
        )
