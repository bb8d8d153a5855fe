"""
persistence/store.py — Abstract Store Contract

Everything the agent loop, context builder and summarizer persist goes
through BaseStore. Every write is scoped to a single row and is additive
(counter increments, status transitions keyed by a unique id), so no
cross-row transactions are needed.

Implementations:
  - InMemoryStore  (persistence/in_memory.py)   tests, ephemeral runs
  - SQLiteStore    (persistence/sqlite_store.py) aiosqlite-backed

Unknown ids on update raise PersistenceError.
"""

from __future__ import annotations

import calendar
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from persistence.records import (
    ConversationLogEntry,
    ConversationRecord,
    KnowledgeEntry,
    TaskRecord,
    TaskStatus,
    TokenUsageRecord,
)


def month_bounds(now: Optional[datetime] = None) -> tuple[float, float]:
    """Epoch-second [start, end) of the calendar month containing `now` (UTC)."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    days = calendar.monthrange(now.year, now.month)[1]
    return start.timestamp(), start.timestamp() + days * 86_400


class BaseStore(ABC):

    async def init(self) -> None:
        """Open connections / create schema. No-op by default."""

    async def close(self) -> None:
        """Release resources. No-op by default."""

    # ── Tasks ─────────────────────────────────────────────────────────────────

    @abstractmethod
    async def create_task(
        self,
        type: str,
        description: Optional[str] = None,
        channel_type: Optional[str] = None,
        channel_id: Optional[str] = None,
        token_budget_usd: Optional[float] = None,
        model_used: Optional[str] = None,
    ) -> TaskRecord: ...

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[TaskRecord]: ...

    @abstractmethod
    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus | str,
        error_message: Optional[str] = None,
    ) -> None:
        """Set the status; terminal statuses also stamp completed_at."""

    @abstractmethod
    async def update_task_spend(self, task_id: str, spent_usd: float) -> None: ...

    # ── Conversations ─────────────────────────────────────────────────────────

    @abstractmethod
    async def create_conversation(
        self,
        conversation_id: str,
        channel_type: str,
        channel_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> ConversationRecord:
        """Create the conversation, or return the existing record for a known id."""

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]: ...

    @abstractmethod
    async def increment_message_count(self, conversation_id: str, token_count: int) -> None:
        """Add one message and `token_count` tokens to the conversation counters."""

    @abstractmethod
    async def update_conversation_summary(self, conversation_id: str, summary: str) -> None: ...

    # ── Conversation logs ─────────────────────────────────────────────────────

    @abstractmethod
    async def append_conversation_log(
        self,
        conversation_id: str,
        role: str,
        content: str,
        token_count: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ConversationLogEntry: ...

    @abstractmethod
    async def get_conversation_logs(
        self,
        conversation_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ConversationLogEntry]:
        """Oldest first."""

    @abstractmethod
    async def get_recent_conversation_logs(
        self,
        conversation_id: str,
        limit: int = 40,
    ) -> list[ConversationLogEntry]:
        """The newest `limit` logs, returned oldest first."""

    @abstractmethod
    async def delete_old_logs(self, conversation_id: str, keep_count: int) -> int:
        """Delete all but the newest `keep_count` logs. Returns the number deleted."""

    @abstractmethod
    async def get_conversation_token_count(self, conversation_id: str) -> int:
        """Sum of token_count over the conversation's logs (None counts as 0)."""

    # ── Token usage ───────────────────────────────────────────────────────────

    @abstractmethod
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
    ) -> TokenUsageRecord: ...

    @abstractmethod
    async def get_monthly_total_cost(self, now: Optional[datetime] = None) -> float:
        """Total recorded cost for the current calendar month (UTC)."""

    # ── Knowledge ─────────────────────────────────────────────────────────────

    @abstractmethod
    async def upsert_knowledge(
        self,
        category: str,
        key: str,
        value: str,
        source_conversation_id: Optional[str] = None,
        source_task_id: Optional[str] = None,
        confidence: float = 1.0,
    ) -> KnowledgeEntry:
        """Insert a knowledge entry. Several entries may share category + key."""

    @abstractmethod
    async def get_knowledge(self, category: str, key: str) -> list[KnowledgeEntry]:
        """Entries for category + key, newest first."""
