"""
brain/types.py — PocketClaw Brain Data Models

All shared types used between the agent loop and LLM providers.
Providers (Anthropic, OpenAI, Gemini, DeepSeek, Ollama) map their native
request/response shapes into these types.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class StopReason(str, Enum):
    END_TURN = "end_turn"       # normal completion
    TOOL_USE = "tool_use"       # model wants to call tools
    MAX_TOKENS = "max_tokens"   # hit the output limit
    OTHER = "other"             # anything else the provider reports


class ChannelType(str, Enum):
    CLI = "cli"
    WEBCHAT = "webchat"
    DISCORD = "discord"
    TELEGRAM = "telegram"
    SLACK = "slack"
    WHATSAPP = "whatsapp"
    SIGNAL = "signal"
    IMESSAGE = "imessage"


# ─────────────────────────────────────────────────────────────────────────────
# Content blocks
# ─────────────────────────────────────────────────────────────────────────────


class ContentBlock(BaseModel):
    """
    One block of message content.

    type="text"        → text
    type="tool_use"    → id, name, input        (model → tool request)
    type="tool_result" → tool_use_id, content, is_error  (tool → model)
    """
    type: Literal["text", "tool_use", "tool_result"]
    text: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None
    input: dict[str, Any] = Field(default_factory=dict)
    tool_use_id: Optional[str] = None
    content: Optional[str] = None
    is_error: bool = False

    @classmethod
    def text_block(cls, text: str) -> "ContentBlock":
        return cls(type="text", text=text)

    @classmethod
    def tool_use(cls, id: str, name: str, input: Optional[dict[str, Any]] = None) -> "ContentBlock":
        return cls(type="tool_use", id=id, name=name, input=input or {})

    @classmethod
    def tool_result(cls, tool_use_id: str, content: str, is_error: bool = False) -> "ContentBlock":
        return cls(type="tool_result", tool_use_id=tool_use_id, content=content, is_error=is_error)


class ChatMessage(BaseModel):
    """A single conversation message: plain text or a list of content blocks."""
    role: Role
    content: Union[str, list[ContentBlock]]

    @classmethod
    def user(cls, content: Union[str, list[ContentBlock]]) -> "ChatMessage":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: Union[str, list[ContentBlock]]) -> "ChatMessage":
        return cls(role=Role.ASSISTANT, content=content)


# ─────────────────────────────────────────────────────────────────────────────
# Tool declaration
# ─────────────────────────────────────────────────────────────────────────────


class ToolSchema(BaseModel):
    """
    Provider-agnostic tool definition.
    Providers translate this into their native tool/function schema.
    """
    name: str
    description: str
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )


# ─────────────────────────────────────────────────────────────────────────────
# Request options / response
# ─────────────────────────────────────────────────────────────────────────────


class ChatOptions(BaseModel):
    """Per-request options for a single chat() call."""
    model: str
    max_tokens: int = 4096
    tools: list[ToolSchema] = Field(default_factory=list)
    system_prompt: Optional[str] = None


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ChatResponse(BaseModel):
    """Normalised response from any LLM provider."""
    content: list[ContentBlock] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    stop_reason: StopReason = StopReason.END_TURN
    model: str = ""

    @property
    def tool_use_blocks(self) -> list[ContentBlock]:
        return [b for b in self.content if b.type == "tool_use"]

    @property
    def text(self) -> str:
        """Concatenated text of every text block."""
        return "".join(b.text for b in self.content if b.type == "text" and b.text)
