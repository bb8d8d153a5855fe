"""
persistence/in_memory.py — In-Memory Store

Dict-backed BaseStore for tests and ephemeral runs. Nothing survives the
process. Methods never await internally, so each call is atomic with
respect to other coroutines on the same event loop.
"""

from __future__ import annotations

import dataclasses
import itertools
import time
import uuid
from datetime import datetime
from typing import Any, Optional

from exceptions import PersistenceError
from observability.logger import get_logger
from persistence.records import (
    ConversationLogEntry,
    ConversationRecord,
    KnowledgeEntry,
    TaskRecord,
    TaskStatus,
    TokenUsageRecord,
)
from persistence.store import BaseStore, month_bounds

log = get_logger(__name__)


class InMemoryStore(BaseStore):

    def __init__(self) -> None:
        self._tasks: dict[str, TaskRecord] = {}
        self._conversations: dict[str, ConversationRecord] = {}
        self._logs: list[ConversationLogEntry] = []
        self._usage: list[TokenUsageRecord] = []
        self._knowledge: list[KnowledgeEntry] = []
        self._ids = itertools.count(1)

    # ── Tasks ─────────────────────────────────────────────────────────────────

    async def create_task(
        self,
        type: str,
        description: Optional[str] = None,
        channel_type: Optional[str] = None,
        channel_id: Optional[str] = None,
        token_budget_usd: Optional[float] = None,
        model_used: Optional[str] = None,
    ) -> TaskRecord:
        task = TaskRecord(
            id=f"task_{uuid.uuid4().hex[:12]}",
            type=type,
            description=description,
            channel_type=channel_type,
            channel_id=channel_id,
            token_budget_usd=token_budget_usd,
            model_used=model_used,
        )
        self._tasks[task.id] = task
        log.debug("store.task_created", task_id=task.id, type=type)
        return dataclasses.replace(task)

    async def get_task(self, task_id: str) -> Optional[TaskRecord]:
        task = self._tasks.get(task_id)
        return dataclasses.replace(task) if task else None

    def _require_task(self, task_id: str) -> TaskRecord:
        task = self._tasks.get(task_id)
        if task is None:
            raise PersistenceError(f"Task '{task_id}' not found")
        return task

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus | str,
        error_message: Optional[str] = None,
    ) -> None:
        task = self._require_task(task_id)
        status = TaskStatus(status)
        now = time.time()
        task.status = status
        task.error_message = error_message
        task.updated_at = now
        if status.is_terminal:
            task.completed_at = now

    async def update_task_spend(self, task_id: str, spent_usd: float) -> None:
        task = self._require_task(task_id)
        task.tokens_spent_usd = spent_usd
        task.updated_at = time.time()

    # ── Conversations ─────────────────────────────────────────────────────────

    async def create_conversation(
        self,
        conversation_id: str,
        channel_type: str,
        channel_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> ConversationRecord:
        existing = self._conversations.get(conversation_id)
        if existing is not None:
            return existing
        conversation = ConversationRecord(
            id=conversation_id,
            channel_type=channel_type,
            channel_id=channel_id or conversation_id,
            task_id=task_id,
        )
        self._conversations[conversation_id] = conversation
        log.debug("store.conversation_created", conversation_id=conversation_id)
        return dataclasses.replace(conversation)

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        conversation = self._conversations.get(conversation_id)
        return dataclasses.replace(conversation) if conversation else None

    def _require_conversation(self, conversation_id: str) -> ConversationRecord:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise PersistenceError(f"Conversation '{conversation_id}' not found")
        return conversation

    async def increment_message_count(self, conversation_id: str, token_count: int) -> None:
        conversation = self._require_conversation(conversation_id)
        conversation.message_count += 1
        conversation.total_tokens += token_count
        conversation.updated_at = time.time()

    async def update_conversation_summary(self, conversation_id: str, summary: str) -> None:
        conversation = self._require_conversation(conversation_id)
        conversation.summary = summary
        conversation.updated_at = time.time()

    # ── Conversation logs ─────────────────────────────────────────────────────

    async def append_conversation_log(
        self,
        conversation_id: str,
        role: str,
        content: str,
        token_count: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ConversationLogEntry:
        entry = ConversationLogEntry(
            id=next(self._ids),
            conversation_id=conversation_id,
            role=role,
            content=content,
            token_count=token_count,
            metadata=dict(metadata or {}),
        )
        self._logs.append(entry)
        return dataclasses.replace(entry)

    async def get_conversation_logs(
        self,
        conversation_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ConversationLogEntry]:
        rows = [e for e in self._logs if e.conversation_id == conversation_id]
        return [dataclasses.replace(e) for e in rows[offset:offset + limit]]

    async def get_recent_conversation_logs(
        self,
        conversation_id: str,
        limit: int = 40,
    ) -> list[ConversationLogEntry]:
        rows = [e for e in self._logs if e.conversation_id == conversation_id]
        return [dataclasses.replace(e) for e in rows[-limit:]] if limit > 0 else []

    async def delete_old_logs(self, conversation_id: str, keep_count: int) -> int:
        rows = [e for e in self._logs if e.conversation_id == conversation_id]
        doomed = {e.id for e in rows[:max(0, len(rows) - keep_count)]}
        if doomed:
            self._logs = [e for e in self._logs if e.id not in doomed]
            log.debug("store.logs_pruned", conversation_id=conversation_id, deleted=len(doomed))
        return len(doomed)

    async def get_conversation_token_count(self, conversation_id: str) -> int:
        return sum(
            e.token_count or 0 for e in self._logs if e.conversation_id == conversation_id
        )

    # ── Token usage ───────────────────────────────────────────────────────────

    async def record_token_usage(
        self,
        task_id: Optional[str],
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cached_tokens: int = 0,
        cost_usd: float = 0.0,
        round_trip_number: int = 0,
    ) -> TokenUsageRecord:
        record = TokenUsageRecord(
            id=next(self._ids),
            task_id=task_id,
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cached_tokens=cached_tokens,
            cost_usd=cost_usd,
            round_trip_number=round_trip_number,
        )
        self._usage.append(record)
        return dataclasses.replace(record)

    async def get_monthly_total_cost(self, now: Optional[datetime] = None) -> float:
        start, end = month_bounds(now)
        return sum(r.cost_usd for r in self._usage if start <= r.created_at < end)

    # ── Knowledge ─────────────────────────────────────────────────────────────

    async def upsert_knowledge(
        self,
        category: str,
        key: str,
        value: str,
        source_conversation_id: Optional[str] = None,
        source_task_id: Optional[str] = None,
        confidence: float = 1.0,
    ) -> KnowledgeEntry:
        entry = KnowledgeEntry(
            id=next(self._ids),
            category=category,
            key=key,
            value=value,
            source_conversation_id=source_conversation_id,
            source_task_id=source_task_id,
            confidence=confidence,
        )
        self._knowledge.append(entry)
        log.debug("store.knowledge_created", category=category, key=key)
        return dataclasses.replace(entry)

    async def get_knowledge(self, category: str, key: str) -> list[KnowledgeEntry]:
        matches = [e for e in self._knowledge if e.category == category and e.key == key]
        return [dataclasses.replace(e) for e in reversed(matches)]
