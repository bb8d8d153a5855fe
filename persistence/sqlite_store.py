"""
persistence/sqlite_store.py — SQLite Store

aiosqlite-backed BaseStore. One connection per store; writes are
serialised through an asyncio.Lock so concurrent sessions never
interleave an execute with another session's commit.

Tables:
  - tasks              : one row per agent loop run
  - conversations      : channel-scoped dialogue sessions and counters
  - conversation_logs  : every user / assistant message, append-only
  - token_usage        : one row per successful model call
  - knowledge          : extracted key facts

Usage:
    store = SQLiteStore("./data/sqlite/pocketclaw.db")
    await store.init()
    task = await store.create_task(type="chat", description="hello")
    await store.close()
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiosqlite

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

# ── Schema DDL ────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id                TEXT PRIMARY KEY,
    status            TEXT NOT NULL DEFAULT 'pending',
    type              TEXT NOT NULL,
    description       TEXT,
    channel_type      TEXT,
    channel_id        TEXT,
    token_budget_usd  REAL,
    tokens_spent_usd  REAL NOT NULL DEFAULT 0,
    model_used        TEXT,
    error_message     TEXT,
    created_at        REAL NOT NULL,
    updated_at        REAL NOT NULL,
    completed_at      REAL
);

CREATE TABLE IF NOT EXISTS conversations (
    id             TEXT PRIMARY KEY,
    task_id        TEXT,
    channel_type   TEXT NOT NULL,
    channel_id     TEXT NOT NULL,
    summary        TEXT,
    message_count  INTEGER NOT NULL DEFAULT 0,
    total_tokens   INTEGER NOT NULL DEFAULT 0,
    created_at     REAL NOT NULL,
    updated_at     REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS conversation_logs (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id  TEXT NOT NULL,
    role             TEXT NOT NULL,
    content          TEXT NOT NULL,
    token_count      INTEGER,
    metadata         TEXT DEFAULT '{}',
    created_at       REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS token_usage (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id            TEXT,
    provider           TEXT NOT NULL,
    model              TEXT NOT NULL,
    input_tokens       INTEGER NOT NULL,
    output_tokens      INTEGER NOT NULL,
    cached_tokens      INTEGER NOT NULL DEFAULT 0,
    cost_usd           REAL NOT NULL DEFAULT 0,
    round_trip_number  INTEGER NOT NULL DEFAULT 0,
    created_at         REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS knowledge (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    category                TEXT NOT NULL,
    key                     TEXT NOT NULL,
    value                   TEXT NOT NULL,
    source_conversation_id  TEXT,
    source_task_id          TEXT,
    confidence              REAL DEFAULT 1.0,
    created_at              REAL NOT NULL,
    updated_at              REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_logs_conversation ON conversation_logs(conversation_id);
CREATE INDEX IF NOT EXISTS idx_usage_created ON token_usage(created_at);
CREATE INDEX IF NOT EXISTS idx_knowledge_cat_key ON knowledge(category, key);
"""


# ── Row mappers ───────────────────────────────────────────────────────────────

def _row_to_task(row: aiosqlite.Row) -> TaskRecord:
    return TaskRecord(
        id=row["id"],
        type=row["type"],
        status=TaskStatus(row["status"]),
        description=row["description"],
        channel_type=row["channel_type"],
        channel_id=row["channel_id"],
        token_budget_usd=row["token_budget_usd"],
        tokens_spent_usd=row["tokens_spent_usd"],
        model_used=row["model_used"],
        error_message=row["error_message"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
    )


def _row_to_conversation(row: aiosqlite.Row) -> ConversationRecord:
    return ConversationRecord(
        id=row["id"],
        task_id=row["task_id"],
        channel_type=row["channel_type"],
        channel_id=row["channel_id"],
        summary=row["summary"],
        message_count=row["message_count"],
        total_tokens=row["total_tokens"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_log(row: aiosqlite.Row) -> ConversationLogEntry:
    return ConversationLogEntry(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"],
        token_count=row["token_count"],
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=row["created_at"],
    )


def _row_to_knowledge(row: aiosqlite.Row) -> KnowledgeEntry:
    return KnowledgeEntry(
        id=row["id"],
        category=row["category"],
        key=row["key"],
        value=row["value"],
        source_conversation_id=row["source_conversation_id"],
        source_task_id=row["source_task_id"],
        confidence=row["confidence"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# ── Main class ────────────────────────────────────────────────────────────────

class SQLiteStore(BaseStore):
    """Async SQLite-backed store. Call `await store.init()` before use."""

    def __init__(self, db_path: str = "./data/sqlite/pocketclaw.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def init(self) -> None:
        """Create the database file and tables if they don't exist."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        log.info("sqlite_store.initialized", db_path=self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise PersistenceError(
                "SQLiteStore is not initialised (or has been closed). "
                "Call `await store.init()` before use."
            )
        return self._db

    async def _write(self, sql: str, params: tuple) -> aiosqlite.Cursor:
        db = self._require_db()
        async with self._write_lock:
            try:
                cursor = await db.execute(sql, params)
                await db.commit()
            except aiosqlite.Error as e:
                raise PersistenceError(f"SQLite write failed: {e}") from e
        return cursor

    async def _fetchone(self, sql: str, params: tuple) -> Optional[aiosqlite.Row]:
        db = self._require_db()
        try:
            async with db.execute(sql, params) as cursor:
                return await cursor.fetchone()
        except aiosqlite.Error as e:
            raise PersistenceError(f"SQLite read failed: {e}") from e

    async def _fetchall(self, sql: str, params: tuple) -> list[aiosqlite.Row]:
        db = self._require_db()
        try:
            async with db.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            raise PersistenceError(f"SQLite read failed: {e}") from e

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
        task_id = f"task_{uuid.uuid4().hex[:12]}"
        now = time.time()
        await self._write(
            """INSERT INTO tasks
               (id, status, type, description, channel_type, channel_id,
                token_budget_usd, tokens_spent_usd, model_used, created_at, updated_at)
               VALUES (?, 'pending', ?, ?, ?, ?, ?, 0, ?, ?, ?)""",
            (task_id, type, description, channel_type, channel_id,
             token_budget_usd, model_used, now, now),
        )
        log.debug("store.task_created", task_id=task_id, type=type)
        task = await self.get_task(task_id)
        if task is None:
            raise PersistenceError(f"Task '{task_id}' missing after insert")
        return task

    async def get_task(self, task_id: str) -> Optional[TaskRecord]:
        row = await self._fetchone("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return _row_to_task(row) if row else None

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus | str,
        error_message: Optional[str] = None,
    ) -> None:
        status = TaskStatus(status)
        now = time.time()
        cursor = await self._write(
            """UPDATE tasks SET status=?, error_message=?, updated_at=?,
               completed_at=COALESCE(?, completed_at)
               WHERE id=?""",
            (status.value, error_message, now, now if status.is_terminal else None, task_id),
        )
        if cursor.rowcount == 0:
            raise PersistenceError(f"Task '{task_id}' not found")

    async def update_task_spend(self, task_id: str, spent_usd: float) -> None:
        cursor = await self._write(
            "UPDATE tasks SET tokens_spent_usd=?, updated_at=? WHERE id=?",
            (spent_usd, time.time(), task_id),
        )
        if cursor.rowcount == 0:
            raise PersistenceError(f"Task '{task_id}' not found")

    # ── Conversations ─────────────────────────────────────────────────────────

    async def create_conversation(
        self,
        conversation_id: str,
        channel_type: str,
        channel_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> ConversationRecord:
        now = time.time()
        await self._write(
            """INSERT INTO conversations
               (id, task_id, channel_type, channel_id, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO NOTHING""",
            (conversation_id, task_id, channel_type, channel_id or conversation_id, now, now),
        )
        conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            raise PersistenceError(f"Conversation '{conversation_id}' missing after insert")
        log.debug("store.conversation_created", conversation_id=conversation_id)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        row = await self._fetchone("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        return _row_to_conversation(row) if row else None

    async def increment_message_count(self, conversation_id: str, token_count: int) -> None:
        cursor = await self._write(
            """UPDATE conversations
               SET message_count = message_count + 1,
                   total_tokens = total_tokens + ?,
                   updated_at = ?
               WHERE id = ?""",
            (token_count, time.time(), conversation_id),
        )
        if cursor.rowcount == 0:
            raise PersistenceError(f"Conversation '{conversation_id}' not found")

    async def update_conversation_summary(self, conversation_id: str, summary: str) -> None:
        cursor = await self._write(
            "UPDATE conversations SET summary=?, updated_at=? WHERE id=?",
            (summary, time.time(), conversation_id),
        )
        if cursor.rowcount == 0:
            raise PersistenceError(f"Conversation '{conversation_id}' not found")

    # ── Conversation logs ─────────────────────────────────────────────────────

    async def append_conversation_log(
        self,
        conversation_id: str,
        role: str,
        content: str,
        token_count: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ConversationLogEntry:
        now = time.time()
        cursor = await self._write(
            """INSERT INTO conversation_logs
               (conversation_id, role, content, token_count, metadata, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (conversation_id, role, content, token_count, json.dumps(metadata or {}), now),
        )
        return ConversationLogEntry(
            id=cursor.lastrowid,
            conversation_id=conversation_id,
            role=role,
            content=content,
            token_count=token_count,
            metadata=dict(metadata or {}),
            created_at=now,
        )

    async def get_conversation_logs(
        self,
        conversation_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ConversationLogEntry]:
        rows = await self._fetchall(
            """SELECT * FROM conversation_logs
               WHERE conversation_id = ?
               ORDER BY id ASC
               LIMIT ? OFFSET ?""",
            (conversation_id, limit, offset),
        )
        return [_row_to_log(r) for r in rows]

    async def get_recent_conversation_logs(
        self,
        conversation_id: str,
        limit: int = 40,
    ) -> list[ConversationLogEntry]:
        rows = await self._fetchall(
            """SELECT * FROM (
                   SELECT * FROM conversation_logs
                   WHERE conversation_id = ?
                   ORDER BY id DESC
                   LIMIT ?
               ) ORDER BY id ASC""",
            (conversation_id, limit),
        )
        return [_row_to_log(r) for r in rows]

    async def delete_old_logs(self, conversation_id: str, keep_count: int) -> int:
        cursor = await self._write(
            """DELETE FROM conversation_logs
               WHERE conversation_id = ?
                 AND id NOT IN (
                     SELECT id FROM conversation_logs
                     WHERE conversation_id = ?
                     ORDER BY id DESC
                     LIMIT ?
                 )""",
            (conversation_id, conversation_id, keep_count),
        )
        deleted = cursor.rowcount
        if deleted > 0:
            log.debug("store.logs_pruned", conversation_id=conversation_id, deleted=deleted)
        return deleted

    async def get_conversation_token_count(self, conversation_id: str) -> int:
        row = await self._fetchone(
            """SELECT COALESCE(SUM(token_count), 0) AS total
               FROM conversation_logs WHERE conversation_id = ?""",
            (conversation_id,),
        )
        return int(row["total"]) if row else 0

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
        now = time.time()
        cursor = await self._write(
            """INSERT INTO token_usage
               (task_id, provider, model, input_tokens, output_tokens,
                cached_tokens, cost_usd, round_trip_number, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (task_id, provider, model, input_tokens, output_tokens,
             cached_tokens, cost_usd, round_trip_number, now),
        )
        return TokenUsageRecord(
            id=cursor.lastrowid,
            task_id=task_id,
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cached_tokens=cached_tokens,
            cost_usd=cost_usd,
            round_trip_number=round_trip_number,
            created_at=now,
        )

    async def get_monthly_total_cost(self, now: Optional[datetime] = None) -> float:
        start, end = month_bounds(now)
        row = await self._fetchone(
            """SELECT COALESCE(SUM(cost_usd), 0) AS total FROM token_usage
               WHERE created_at >= ? AND created_at < ?""",
            (start, end),
        )
        return float(row["total"]) if row else 0.0

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
        now = time.time()
        cursor = await self._write(
            """INSERT INTO knowledge
               (category, key, value, source_conversation_id, source_task_id,
                confidence, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (category, key, value, source_conversation_id, source_task_id,
             confidence, now, now),
        )
        log.debug("store.knowledge_created", category=category, key=key)
        return KnowledgeEntry(
            id=cursor.lastrowid,
            category=category,
            key=key,
            value=value,
            source_conversation_id=source_conversation_id,
            source_task_id=source_task_id,
            confidence=confidence,
            created_at=now,
            updated_at=now,
        )

    async def get_knowledge(self, category: str, key: str) -> list[KnowledgeEntry]:
        rows = await self._fetchall(
            """SELECT * FROM knowledge WHERE category = ? AND key = ?
               ORDER BY id DESC""",
            (category, key),
        )
        return [_row_to_knowledge(r) for r in rows]
