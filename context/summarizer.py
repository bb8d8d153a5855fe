"""
context/summarizer.py — Conversation Summarizer

Once a conversation's logged tokens pass a threshold, a small model
writes a lossy summary and a list of key facts. The summary is stored on
the conversation (the context builder injects it into later system
prompts); key facts go to the knowledge table. Raw logs are never
modified.

Every summarization call is budget-checked first and skipped silently
when it would not fit.

Usage:
    if await needs_summarization(store, conversation_id):
        result = await summarize_conversation(store, conversation_id, provider)
"""

from __future__ import annotations

import re
from typing import Optional

from pydantic import BaseModel, Field

from brain.provider import BaseProvider
from brain.types import ChatMessage, ChatOptions
from cost.budget import can_afford
from cost.pricing import calculate_cost
from observability.logger import get_logger
from persistence.records import ConversationLogEntry
from persistence.store import BaseStore

log = get_logger(__name__)

DEFAULT_SUMMARIZATION_THRESHOLD = 4000
SUMMARIZATION_MODEL = "claude-haiku-4-5-20251001"
SUMMARIZATION_MAX_TOKENS = 1500
DEFAULT_SUMMARY_BUDGET_USD = 0.10
DEFAULT_FACT_CONFIDENCE = 0.8

# Conservative size of one summarization call
_ESTIMATED_INPUT_TOKENS = 4000
_ESTIMATED_OUTPUT_TOKENS = 1000
# Newest logs fed to one summarization call
_SUMMARY_LOG_LIMIT = 100

_SUMMARIZATION_SYSTEM_PROMPT = """\
You are a conversation summarizer. Given conversation logs, produce:

1. A concise summary paragraph (under 200 words) capturing the main topics, decisions, and outcomes.

2. A list of key facts extracted from the conversation. Each fact should be on its own line in this exact format:
FACT: [key] = [value] (confidence: [0.0-1.0])

Key facts include: user preferences, names, dates, decisions, action items, locations, important numbers, and any other specific information worth remembering.

Format your response exactly like this:

SUMMARY:
[Your summary paragraph here]

KEY_FACTS:
FACT: [key] = [value] (confidence: [score])
FACT: [key] = [value] (confidence: [score])
..."""

_SUMMARY_RE = re.compile(r"SUMMARY:\s*\n(.*?)(?=\nKEY_FACTS:|\Z)", re.IGNORECASE | re.DOTALL)
_FACT_RE = re.compile(
    r"FACT:\s*(.+?)\s*=\s*(.+?)(?:\s*\(confidence:\s*(-?[\d.]+)\))?$",
    re.MULTILINE,
)


class KeyFact(BaseModel):
    key: str
    value: str
    category: str = "conversation_fact"
    source: str = "summarizer"
    confidence: float = DEFAULT_FACT_CONFIDENCE


class SummarizationResult(BaseModel):
    summarized: bool
    summary: Optional[str] = None
    key_facts: list[KeyFact] = Field(default_factory=list)
    skip_reason: Optional[str] = None   # below_threshold | budget_exceeded | no_logs | empty_response


# ─────────────────────────────────────────────────────────────────────────────
# Parsing
# ─────────────────────────────────────────────────────────────────────────────


def format_logs(logs: list[ConversationLogEntry]) -> str:
    return "\n".join(f"[{entry.role.upper()}]: {entry.content}" for entry in logs)


def extract_summary_text(text: str) -> str:
    """Text of the SUMMARY: section, or the whole text when there is none."""
    match = _SUMMARY_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def _parse_confidence(raw: Optional[str]) -> float:
    if not raw:
        return DEFAULT_FACT_CONFIDENCE
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_FACT_CONFIDENCE
    return max(0.0, min(1.0, value))


def extract_key_facts(text: str) -> list[KeyFact]:
    """
    Parse every `FACT: key = value (confidence: x)` line in `text`.

    Confidence is optional (default 0.8) and clamped to [0, 1].
    """
    return [
        KeyFact(
            key=match.group(1).strip(),
            value=match.group(2).strip(),
            confidence=_parse_confidence(match.group(3)),
        )
        for match in _FACT_RE.finditer(text)
    ]


# ─────────────────────────────────────────────────────────────────────────────
# Summarization
# ─────────────────────────────────────────────────────────────────────────────


async def needs_summarization(
    store: BaseStore,
    conversation_id: str,
    threshold: int = DEFAULT_SUMMARIZATION_THRESHOLD,
) -> bool:
    """True once the conversation's logged tokens exceed `threshold`."""
    return await store.get_conversation_token_count(conversation_id) > threshold


async def summarize_conversation(
    store: BaseStore,
    conversation_id: str,
    provider: BaseProvider,
    threshold: int = DEFAULT_SUMMARIZATION_THRESHOLD,
    task_spent_usd: float = 0.0,
    task_budget_usd: float = DEFAULT_SUMMARY_BUDGET_USD,
    model: str = SUMMARIZATION_MODEL,
) -> SummarizationResult:
    """
    Summarize a conversation and store the summary and key facts.

    Skips (summarized=False) when the conversation is below the threshold,
    the call would not fit the budget, there are no logs, or the model
    returns no text. Provider and store failures propagate.
    """
    if not await needs_summarization(store, conversation_id, threshold):
        log.debug("summarizer.below_threshold", conversation_id=conversation_id)
        return SummarizationResult(summarized=False, skip_reason="below_threshold")

    estimated_cost = calculate_cost(model, _ESTIMATED_INPUT_TOKENS, _ESTIMATED_OUTPUT_TOKENS)
    if not can_afford(task_spent_usd, task_budget_usd, estimated_cost):
        log.warning(
            "summarizer.budget_exceeded",
            conversation_id=conversation_id,
            task_spent_usd=task_spent_usd,
            task_budget_usd=task_budget_usd,
            estimated_cost_usd=estimated_cost,
        )
        return SummarizationResult(summarized=False, skip_reason="budget_exceeded")

    logs = await store.get_recent_conversation_logs(conversation_id, limit=_SUMMARY_LOG_LIMIT)
    if not logs:
        return SummarizationResult(summarized=False, skip_reason="no_logs")

    prompt = (
        "Please summarize the following conversation and extract key facts:\n\n"
        + format_logs(logs)
    )
    response = await provider.chat(
        [ChatMessage.user(prompt)],
        ChatOptions(
            model=model,
            max_tokens=SUMMARIZATION_MAX_TOKENS,
            system_prompt=_SUMMARIZATION_SYSTEM_PROMPT,
        ),
    )

    text = response.text
    if not text:
        log.warning("summarizer.empty_response", conversation_id=conversation_id)
        return SummarizationResult(summarized=False, skip_reason="empty_response")

    summary = extract_summary_text(text)
    key_facts = extract_key_facts(text)

    if summary:
        await store.update_conversation_summary(conversation_id, summary)

    for fact in key_facts:
        await store.upsert_knowledge(
            category=fact.category,
            key=fact.key,
            value=fact.value,
            source_conversation_id=conversation_id,
            confidence=fact.confidence,
        )

    log.info(
        "summarizer.summarized",
        conversation_id=conversation_id,
        summary_length=len(summary),
        key_fact_count=len(key_facts),
        input_tokens=response.usage.input_tokens,
        output_tokens=response.usage.output_tokens,
    )
    return SummarizationResult(summarized=True, summary=summary, key_facts=key_facts)
