"""
tools/executor.py — Tool Executor

Runs the tool_use blocks the model emits and turns each into a
tool_result block.

Flow:
  tool_use block → HandlerToolExecutor.execute()
    → Registry lookup (is the tool registered?)
    → Handler execution (async, with timeout)
    → tool_result block (success or is_error=True)

One executor is built per agent loop task through a factory
`(task_id) -> ToolExecutor`, so every log line carries the task.
"""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import Callable

from brain.types import ContentBlock
from exceptions import ToolExecutionError
from observability.logger import get_logger
from tools.registry import ToolRegistry

log = get_logger(__name__)

# Max output size fed back to the model; truncate beyond this
MAX_RESULT_CHARS = 8_000

DEFAULT_TIMEOUT_SECONDS = 30.0


class ToolExecutor(ABC):
    """Contract the agent loop uses to run one tool call."""

    @abstractmethod
    async def execute(self, tool_use: ContentBlock) -> ContentBlock:
        """Run a tool_use block and return a tool_result block."""
        ...


ToolExecutorFactory = Callable[[str], ToolExecutor]


class HandlerToolExecutor(ToolExecutor):
    """
    Executes tools registered in a ToolRegistry.

    Never raises for a tool failure: unknown tools, handler exceptions and
    timeouts all come back as is_error=True results.

    Usage:
        executor = HandlerToolExecutor(registry, security_level=3, task_id="task_ab12")
        result_block = await executor.execute(tool_use_block)
    """

    def __init__(
        self,
        registry: ToolRegistry,
        security_level: int = 3,
        task_id: str = "",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.registry = registry
        self.security_level = security_level
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds

    async def execute(self, tool_use: ContentBlock) -> ContentBlock:
        tool_use_id = tool_use.id or ""
        name = tool_use.name or ""
        start_ms = time.monotonic() * 1000

        log.info(
            "tool_executor.dispatch",
            tool=name,
            tool_use_id=tool_use_id,
            task_id=self.task_id,
            security_level=self.security_level,
        )

        handler = self.registry.get_handler(name)
        if handler is None:
            return ContentBlock.tool_result(
                tool_use_id,
                f"Unknown tool '{name}'. Available tools: {self.registry.list_names()}",
                is_error=True,
            )

        try:
            raw_result = await asyncio.wait_for(
                handler(**tool_use.input),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            log.error(
                "tool_executor.timeout",
                tool=name,
                task_id=self.task_id,
                timeout_seconds=self.timeout_seconds,
            )
            return ContentBlock.tool_result(
                tool_use_id,
                f"Tool '{name}' timed out after {self.timeout_seconds}s",
                is_error=True,
            )
        except ToolExecutionError as e:
            log.warning("tool_executor.tool_error", tool=name, task_id=self.task_id, error=str(e))
            return ContentBlock.tool_result(tool_use_id, f"Tool execution failed: {e}", is_error=True)
        except Exception as e:
            log.error(
                "tool_executor.execution_error",
                tool=name,
                task_id=self.task_id,
                error=str(e),
                exc_info=True,
            )
            return ContentBlock.tool_result(
                tool_use_id,
                f"Tool execution failed: {type(e).__name__}: {e}",
                is_error=True,
            )

        content = _truncate(_normalise_result(raw_result), MAX_RESULT_CHARS)
        log.info(
            "tool_executor.success",
            tool=name,
            tool_use_id=tool_use_id,
            task_id=self.task_id,
            duration_ms=round(time.monotonic() * 1000 - start_ms, 1),
            result_chars=len(content),
        )
        return ContentBlock.tool_result(tool_use_id, content)


def _normalise_result(result) -> str:
    """Convert any tool return value to a string."""
    if result is None:
        return "Done."
    if isinstance(result, str):
        return result
    if isinstance(result, (dict, list)):
        try:
            return json.dumps(result, indent=2, default=str)
        except (TypeError, ValueError):
            return str(result)
    return str(result)


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return (
        text[:max_chars]
        + f"\n\n[Output truncated: {len(text) - max_chars} chars omitted. "
        f"Total: {len(text)} chars]"
    )
