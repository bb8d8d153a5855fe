"""
persistence/records.py — Store Record Types

Plain dataclasses returned by every BaseStore implementation. Timestamps
are Unix epoch seconds (time.time()).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.KILLED)


@dataclass
class TaskRecord:
    id: str
    type: str
    status: TaskStatus = TaskStatus.PENDING
    description: Optional[str] = None
    channel_type: Optional[str] = None
    channel_id: Optional[str] = None
    token_budget_usd: Optional[float] = None
    tokens_spent_usd: float = 0.0
    model_used: Optional[str] = None
    error_message: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None


@dataclass
class ConversationRecord:
    id: str
    channel_type: str
    channel_id: str
    task_id: Optional[str] = None
    summary: Optional[str] = None
    message_count: int = 0
    total_tokens: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


@dataclass
class ConversationLogEntry:
    id: int
    conversation_id: str
    role: str           # 'user' | 'assistant' | 'system' | 'tool'
    content: str
    token_count: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)


@dataclass
class TokenUsageRecord:
    id: int
    task_id: Optional[str]
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cached_tokens: int = 0
    cost_usd: float = 0.0
    round_trip_number: int = 0
    created_at: float = field(default_factory=time.time)


@dataclass
class KnowledgeEntry:
    id: int
    category: str
    key: str
    value: str
    source_conversation_id: Optional[str] = None
    source_task_id: Optional[str] = None
    confidence: float = 1.0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
