"""
context/builder.py — LLM Context Builder

Assembles the payload sent to the model on the first round trip:
    System prompt (+ conversation summary) → Recent history → User message

Handles token budget awareness via character-count approximation
(~4 characters per token).
"""

from __future__ import annotations

import time
from typing import Optional

from pydantic import BaseModel, Field

from brain.types import ChatMessage, Role
from observability.logger import get_logger
from persistence.store import BaseStore

log = get_logger(__name__)

_HISTORY_MAX_CHARS = 20_000
_HISTORY_FETCH_LIMIT = 40
_SUMMARY_MAX_CHARS = 4_000
_CHARS_PER_TOKEN = 4

_SECURITY_LABELS = {
    1: "Tin Foil Hat",
    2: "Careful",
    3: "Balanced",
    4: "Trusting",
    5: "YOLO",
}

_SECURITY_RULES = {
    1: "You MUST ask for approval before ANY command execution, file access, or API call.",
    2: "Ask approval for destructive operations, new domains, and sudo commands.",
    3: "Execute safe operations autonomously. Ask approval for destructive or risky actions.",
    4: "Execute most operations autonomously. Only ask for highly destructive actions.",
    5: "Execute all operations autonomously. No approval needed.",
}

_SYSTEM_TEMPLATE = """\
You are PocketClaw, a personal AI assistant for {user_name}.

## Security Level: {level} ({label})
{rule}

## Instructions
- Be concise in your responses.
- Track and minimize token costs for every action.
- Prefer deterministic execution over model calls when possible.
- Report errors clearly with actionable context.
- Never expose secrets, API keys, or tokens in your output.

## Current UTC Time
{utc_time}"""

_SUMMARY_TEMPLATE = """

## Earlier In This Conversation
{summary}"""


def estimate_tokens(text: str) -> int:
    """Rough token count for `text` (ceil of chars / 4)."""
    return -(-len(text) // _CHARS_PER_TOKEN)


def _message_chars(message: ChatMessage) -> int:
    if isinstance(message.content, str):
        return len(message.content)
    return sum(len(b.text or b.content or "") for b in message.content)


class ContextPayload(BaseModel):
    messages: list[ChatMessage] = Field(default_factory=list)
    system_prompt: str = ""
    total_tokens: int = 0


class ContextBuilder:
    """Builds the bounded context for one agent loop run."""

    def __init__(self, history_max_chars: int = _HISTORY_MAX_CHARS):
        self.history_max_chars = history_max_chars

    async def build_context(
        self,
        store: BaseStore,
        conversation_id: str,
        user_message: str,
        user_name: str = "User",
        security_level: int = 3,
    ) -> ContextPayload:
        """
        Build the context for this turn.

        A conversation that does not exist yet simply has no summary and
        no history.
        """
        conversation = await store.get_conversation(conversation_id)
        summary = conversation.summary if conversation else None

        system_prompt = self.build_system_prompt(user_name, security_level, summary)

        logs = await store.get_recent_conversation_logs(conversation_id, limit=_HISTORY_FETCH_LIMIT)
        history = [
            ChatMessage(role=Role(entry.role), content=entry.content)
            for entry in logs
            if entry.role in (Role.USER.value, Role.ASSISTANT.value)
        ]
        history = self._trim_history(history)

        messages = history + [ChatMessage.user(user_message)]
        total_tokens = estimate_tokens(system_prompt) + sum(
            -(-_message_chars(m) // _CHARS_PER_TOKEN) for m in messages
        )

        log.debug(
            "context_builder.built",
            conversation_id=conversation_id,
            history_msgs=len(history),
            has_summary=bool(summary),
            total_tokens=total_tokens,
        )
        return ContextPayload(
            messages=messages,
            system_prompt=system_prompt,
            total_tokens=total_tokens,
        )

    # ── System prompt ─────────────────────────────────────────────────────────

    def build_system_prompt(
        self,
        user_name: str,
        security_level: int,
        summary: Optional[str] = None,
    ) -> str:
        level = max(1, min(5, int(security_level)))
        prompt = _SYSTEM_TEMPLATE.format(
            user_name=user_name,
            level=level,
            label=_SECURITY_LABELS[level],
            rule=_SECURITY_RULES[level],
            utc_time=time.strftime("%Y-%m-%d %H:%M UTC", time.gmtime()),
        )
        if summary:
            if len(summary) > _SUMMARY_MAX_CHARS:
                summary = summary[:_SUMMARY_MAX_CHARS] + "\n[...summary truncated]"
            prompt += _SUMMARY_TEMPLATE.format(summary=summary)
        return prompt

    # ── History trimming ──────────────────────────────────────────────────────

    def _trim_history(self, messages: list[ChatMessage]) -> list[ChatMessage]:
        """Drop oldest messages until the history fits within the char budget."""
        if not messages:
            return []

        trimmed = list(messages)
        total = sum(_message_chars(m) for m in trimmed)
        while trimmed and total > self.history_max_chars:
            total -= _message_chars(trimmed.pop(0))

        dropped = len(messages) - len(trimmed)
        if dropped:
            log.debug("context_builder.history_trimmed", dropped=dropped, kept=len(trimmed))

        return trimmed
