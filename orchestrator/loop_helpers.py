"""
orchestrator/loop_helpers.py — Agent Loop Helpers

Pieces of the agent loop that do not touch its counters: response text
extraction, per-call tool execution, and the detached post-completion
work (conversation summarization and key-fact extraction).
"""

from __future__ import annotations

import asyncio
from typing import Optional

from brain.provider import BaseProvider
from brain.types import ChatResponse, ContentBlock
from context.summarizer import (
    DEFAULT_SUMMARIZATION_THRESHOLD,
    extract_key_facts,
    format_logs,
    needs_summarization,
    summarize_conversation,
)
from observability.logger import get_logger
from orchestrator.cancellation import CancellationToken
from orchestrator.utils import fire_and_forget
from persistence.store import BaseStore
from tools.executor import ToolExecutor

log = get_logger(__name__)

# Logs scanned for facts when a task completes
_FACT_SCAN_LOGS = 10
TASK_COMPLETION_FACT_CATEGORY = "task_completion_fact"


def extract_response_text(response: ChatResponse) -> str:
    """Concatenated text of every text block in `response`."""
    return response.text


async def execute_tools(
    executor: ToolExecutor,
    tool_use_blocks: list[ContentBlock],
    cancellation_token: Optional[CancellationToken] = None,
) -> list[ContentBlock]:
    """
    Run every tool call in order and return one tool_result per call.

    A failing call becomes an error-flagged result; it never aborts the
    rest of the batch. Calls not yet started when the token fires are
    answered with "Cancelled." so the model sees a result for each id.
    """
    results: list[ContentBlock] = []
    for block in tool_use_blocks:
        tool_use_id = block.id or ""
        if cancellation_token is not None and cancellation_token.is_cancelled:
            results.append(ContentBlock.tool_result(tool_use_id, "Cancelled.", is_error=True))
            continue
        try:
            results.append(await executor.execute(block))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("agent_loop.tool_failed", tool=block.name, error=str(e))
            results.append(ContentBlock.tool_result(
                tool_use_id,
                f"Tool execution failed: {e}",
                is_error=True,
            ))
    return results


# ─────────────────────────────────────────────────────────────────────────────
# Detached post-completion work
# ─────────────────────────────────────────────────────────────────────────────


async def _summarize_if_needed(
    store: BaseStore,
    conversation_id: str,
    provider: BaseProvider,
    task_spent_usd: float,
    task_budget_usd: float,
    threshold: int,
) -> None:
    if not await needs_summarization(store, conversation_id, threshold):
        return
    await summarize_conversation(
        store,
        conversation_id,
        provider,
        threshold=threshold,
        task_spent_usd=task_spent_usd,
        task_budget_usd=task_budget_usd,
    )


def trigger_summarization_if_needed(
    store: BaseStore,
    conversation_id: str,
    provider: BaseProvider,
    task_spent_usd: float,
    task_budget_usd: float,
    threshold: int = DEFAULT_SUMMARIZATION_THRESHOLD,
) -> asyncio.Task:
    """Detach a threshold check plus summarization. Failures are only logged."""
    return fire_and_forget(
        _summarize_if_needed(
            store, conversation_id, provider, task_spent_usd, task_budget_usd, threshold,
        ),
        label=f"summarize:{conversation_id}",
    )


async def extract_key_facts_on_completion(
    store: BaseStore,
    conversation_id: str,
    task_id: Optional[str] = None,
) -> int:
    """
    Scan the last few logs of a conversation for FACT lines and store them.

    Deterministic, no model call. Returns the number of facts stored.
    """
    logs = await store.get_recent_conversation_logs(conversation_id, limit=_FACT_SCAN_LOGS)
    if not logs:
        return 0

    facts = extract_key_facts(format_logs(logs))
    for fact in facts:
        await store.upsert_knowledge(
            category=TASK_COMPLETION_FACT_CATEGORY,
            key=fact.key,
            value=fact.value,
            source_conversation_id=conversation_id,
            source_task_id=task_id,
            confidence=fact.confidence,
        )

    if facts:
        log.debug("agent_loop.key_facts_extracted", conversation_id=conversation_id, count=len(facts))
    return len(facts)
