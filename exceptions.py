"""
exceptions.py — PocketClaw Unified Error Hierarchy

All PocketClaw-specific exceptions live here. Every layer of the stack
raises typed subclasses of PocketClawError — never bare Exception.

Import from here, not from individual modules:
    from exceptions import BudgetExceededError, TaskCancelledError

Hierarchy:
    PocketClawError
    ├── TerminalConditionError
    │   ├── InputValidationError
    │   ├── BudgetExceededError
    │   ├── RoutingError
    │   ├── ConsecutiveErrorsError
    │   └── KillConditionError
    │       ├── TimeoutKillError
    │       ├── TokenLimitKillError
    │       └── RoundTripLimitKillError
    ├── ProviderError
    ├── ToolExecutionError
    ├── PoolError
    │   ├── TaskCancelledError
    │   └── PoolShuttingDownError
    └── PersistenceError
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class PocketClawError(Exception):
    """Base class for all PocketClaw exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Agent loop terminal conditions
# ─────────────────────────────────────────────────────────────────────────────

class TerminalConditionError(PocketClawError):
    """
    A condition that ends an agent loop run early.

    The agent loop raises these internally and converts them into an
    AgentLoopResult — they never escape process_message().

    Attributes:
        outcome:      "failed" or "killed" — the terminal state to report.
        user_message: Human-readable text any channel can relay verbatim.
    """

    outcome: str = "failed"
    user_message: str = (
        "An unexpected error occurred while processing your request. Please try again."
    )

    def __init__(self, reason: str = "", user_message: Optional[str] = None) -> None:
        if user_message is not None:
            self.user_message = user_message
        super().__init__(reason or self.__class__.__doc__ or self.__class__.__name__)


class InputValidationError(TerminalConditionError):
    """Prompt injection detected in the user message."""

    user_message = (
        "I detected potentially harmful content in your message and cannot "
        "process it. Please rephrase your request."
    )

    def __init__(self, threats: Optional[list[str]] = None, reason: str = "") -> None:
        self.threats = threats or []
        super().__init__(reason or f"Prompt injection detected: {self.threats}")


class BudgetExceededError(TerminalConditionError):
    """A monthly or task-level budget would be exceeded."""

    user_message = "Task budget has been exceeded."


class RoutingError(TerminalConditionError):
    """No model/provider is available for the request."""

    user_message = (
        "No suitable model is available for this request. "
        "Please check your provider configuration."
    )


class ConsecutiveErrorsError(TerminalConditionError):
    """The provider failed max_consecutive_errors times in a row."""

    user_message = (
        "I encountered repeated errors trying to process your request. "
        "Please try again later."
    )


class KillConditionError(TerminalConditionError):
    """A runaway-task limit was breached; the run ends with a partial result."""

    outcome = "killed"


class TimeoutKillError(KillConditionError):
    """Elapsed wall clock exceeded max_duration_ms."""

    user_message = "I ran out of time processing your request. Here is what I have so far."


class TokenLimitKillError(KillConditionError):
    """Accumulated input + output tokens exceeded max_tokens_per_task."""

    user_message = "Token limit for this task has been reached."


class RoundTripLimitKillError(KillConditionError):
    """The loop used max_round_trips without reaching a terminal stop reason."""

    user_message = "I reached the maximum number of processing steps for this request."


# ─────────────────────────────────────────────────────────────────────────────
# Provider / tool layer
# ─────────────────────────────────────────────────────────────────────────────

class ProviderError(PocketClawError):
    """An LLM provider call failed."""

    def __init__(self, message: str, provider: str = "", retryable: bool = True) -> None:
        self.provider = provider
        self.retryable = retryable
        super().__init__(message)


class ToolExecutionError(PocketClawError):
    """A single tool call failed. Scoped to that call — never aborts a round."""

    def __init__(self, message: str, tool_name: str = "") -> None:
        self.tool_name = tool_name
        super().__init__(message)


# ─────────────────────────────────────────────────────────────────────────────
# Task pool
# ─────────────────────────────────────────────────────────────────────────────

class PoolError(PocketClawError):
    """Base for task pool errors."""


class TaskCancelledError(PoolError):
    """The task was killed while queued or cancelled while running."""

    def __init__(self, task_id: str = "", message: str = "Task was aborted") -> None:
        self.task_id = task_id
        super().__init__(message)


class PoolShuttingDownError(PoolError):
    """Submission rejected because the pool is shutting down."""

    def __init__(self, message: str = "Task pool is shutting down") -> None:
        super().__init__(message)


# ─────────────────────────────────────────────────────────────────────────────
# Persistence
# ─────────────────────────────────────────────────────────────────────────────

class PersistenceError(PocketClawError):
    """A store operation failed or the store is not initialised."""
