"""
brain/ — PocketClaw LLM Brain

Provider contract, shared message types and the deterministic model router.
"""

from __future__ import annotations

from brain.provider import BaseProvider
from brain.router import (
    ModelSelection,
    classify_complexity,
    derive_provider_from_model,
    select_model,
)
from brain.types import (
    ChannelType,
    ChatMessage,
    ChatOptions,
    ChatResponse,
    ContentBlock,
    Role,
    StopReason,
    TokenUsage,
    ToolSchema,
)

__all__ = [
    "BaseProvider",
    "ModelSelection",
    "classify_complexity",
    "derive_provider_from_model",
    "select_model",
    "ChannelType",
    "ChatMessage",
    "ChatOptions",
    "ChatResponse",
    "ContentBlock",
    "Role",
    "StopReason",
    "TokenUsage",
    "ToolSchema",
]
