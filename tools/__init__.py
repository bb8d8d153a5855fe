"""
tools/__init__.py — PocketClaw Tool System

Usage:
    from tools import ToolRegistry, HandlerToolExecutor

    registry = ToolRegistry()
    registry.register_tool(schema, handler)
    executor = HandlerToolExecutor(registry, security_level=3, task_id=task_id)
    result_block = await executor.execute(tool_use_block)
"""

from __future__ import annotations

from tools.executor import HandlerToolExecutor, ToolExecutor, ToolExecutorFactory
from tools.registry import ToolHandler, ToolRegistry

__all__ = [
    "HandlerToolExecutor",
    "ToolExecutor",
    "ToolExecutorFactory",
    "ToolHandler",
    "ToolRegistry",
]
