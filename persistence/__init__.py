"""
persistence/__init__.py — PocketClaw Persistence
"""

from persistence.in_memory import InMemoryStore
from persistence.records import (
    ConversationLogEntry,
    ConversationRecord,
    KnowledgeEntry,
    TaskRecord,
    TaskStatus,
    TokenUsageRecord,
)
from persistence.sqlite_store import SQLiteStore
from persistence.store import BaseStore

__all__ = [
    "BaseStore",
    "InMemoryStore",
    "SQLiteStore",
    "TaskStatus",
    "TaskRecord",
    "ConversationRecord",
    "ConversationLogEntry",
    "TokenUsageRecord",
    "KnowledgeEntry",
]
