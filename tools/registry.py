"""
tools/registry.py — Tool Registry

Maps tool names to the ToolSchema declared to the model and the async
handler that runs the call. Skills register here; the agent loop sends
list_schemas() with every model call and the executor looks handlers up
by name.

Usage:
    registry = ToolRegistry()

    @registry.register(
        name="get_weather",
        description="Current weather for a city",
        input_schema={
            "type": "object",
            "properties": {"city": {"type": "string"}},
            "required": ["city"],
        },
    )
    async def get_weather(city: str) -> str:
        ...
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

from brain.types import ToolSchema
from observability.logger import get_logger

log = get_logger(__name__)

ToolHandler = Callable[..., Awaitable[Any]]


class ToolRegistry:
    """Registry of tool schemas and their async handlers. Not designed for concurrent writes."""

    def __init__(self):
        self._schemas: dict[str, ToolSchema] = {}
        self._handlers: dict[str, ToolHandler] = {}

    def register(
        self,
        name: str,
        description: str,
        input_schema: Optional[dict[str, Any]] = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of register_tool()."""
        def decorator(fn: ToolHandler) -> ToolHandler:
            extra = {} if input_schema is None else {"input_schema": input_schema}
            self.register_tool(ToolSchema(name=name, description=description, **extra), fn)
            return fn

        return decorator

    def register_tool(self, schema: ToolSchema, handler: ToolHandler) -> None:
        self._schemas[schema.name] = schema
        self._handlers[schema.name] = handler
        log.debug("tool.registered", tool=schema.name)

    def get_schema(self, name: str) -> Optional[ToolSchema]:
        return self._schemas.get(name)

    def get_handler(self, name: str) -> Optional[ToolHandler]:
        return self._handlers.get(name)

    def list_schemas(self) -> list[ToolSchema]:
        return list(self._schemas.values())

    def list_names(self) -> list[str]:
        return list(self._schemas.keys())

    def __len__(self) -> int:
        return len(self._schemas)

    def __repr__(self) -> str:
        return f"<ToolRegistry tools={list(self._schemas.keys())}>"
