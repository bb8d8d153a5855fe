"""
tests/unit/test_persistence.py — Store Contract Tests

Every test runs against both InMemoryStore and SQLiteStore (tmp_path file).

Covers:
  - task create / status transitions / spend
  - conversation create (idempotent) / counters / summary
  - conversation logs: ordering, recent window, pruning, token count
  - token usage and the calendar-month cost window
  - knowledge entries
  - unknown ids raise PersistenceError
"""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# ── path setup ───────────────────────────────────────────────────────────────
_ROOT = Path(__file__).parent.parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from exceptions import PersistenceError
from persistence.in_memory import InMemoryStore
from persistence.records import TaskStatus
from persistence.sqlite_store import SQLiteStore
from persistence.store import month_bounds


async def _open(kind: str, tmp_path: Path):
    store = InMemoryStore() if kind == "memory" else SQLiteStore(str(tmp_path / "db" / "test.db"))
    await store.init()
    return store


pytestmark = pytest.mark.asyncio

backends = pytest.mark.parametrize("kind", ["memory", "sqlite"])


@backends
class TestTasks:

    async def test_create_and_get(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            task = await store.create_task(
                type="chat", description="hi", channel_type="cli",
                channel_id="conv_1", token_budget_usd=0.5,
            )
            fetched = await store.get_task(task.id)
            assert fetched.id == task.id
            assert fetched.status == TaskStatus.PENDING
            assert fetched.token_budget_usd == 0.5
            assert fetched.tokens_spent_usd == 0.0
            assert await store.get_task("missing") is None
        finally:
            await store.close()

    async def test_status_transitions(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            task = await store.create_task(type="chat")
            await store.update_task_status(task.id, TaskStatus.RUNNING)
            running = await store.get_task(task.id)
            assert running.status == TaskStatus.RUNNING
            assert running.completed_at is None

            await store.update_task_status(task.id, "killed", "Cancelled")
            killed = await store.get_task(task.id)
            assert killed.status == TaskStatus.KILLED
            assert killed.error_message == "Cancelled"
            assert killed.completed_at is not None
        finally:
            await store.close()

    async def test_spend(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            task = await store.create_task(type="chat")
            await store.update_task_spend(task.id, 0.0123)
            assert (await store.get_task(task.id)).tokens_spent_usd == pytest.approx(0.0123)
        finally:
            await store.close()

    async def test_unknown_task_raises(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            with pytest.raises(PersistenceError):
                await store.update_task_status("missing", TaskStatus.FAILED)
            with pytest.raises(PersistenceError):
                await store.update_task_spend("missing", 1.0)
        finally:
            await store.close()


@backends
class TestConversations:

    async def test_create_and_counters(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            conv = await store.create_conversation("conv_1", "discord", task_id="task_1")
            assert conv.channel_id == "conv_1"
            assert conv.message_count == 0

            await store.increment_message_count("conv_1", 120)
            await store.increment_message_count("conv_1", 30)
            await store.update_conversation_summary("conv_1", "talked about cats")

            fetched = await store.get_conversation("conv_1")
            assert fetched.message_count == 2
            assert fetched.total_tokens == 150
            assert fetched.summary == "talked about cats"
            assert fetched.channel_type == "discord"
            assert fetched.task_id == "task_1"
        finally:
            await store.close()

    async def test_create_is_idempotent(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            await store.create_conversation("conv_1", "cli", task_id="task_1")
            await store.increment_message_count("conv_1", 10)
            again = await store.create_conversation("conv_1", "discord", task_id="task_2")

            assert again.channel_type == "cli"
            assert again.task_id == "task_1"
            assert again.message_count == 1
        finally:
            await store.close()

    async def test_unknown(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            with pytest.raises(PersistenceError):
                await store.increment_message_count("nope", 1)
            assert await store.get_conversation("nope") is None
        finally:
            await store.close()


@backends
class TestConversationLogs:

    async def test_order_window_and_tokens(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            for i in range(5):
                await store.append_conversation_log(
                    "conv_1", "user" if i % 2 == 0 else "assistant", f"m{i}",
                    token_count=10 if i != 2 else None, metadata={"i": i},
                )
            await store.append_conversation_log("other", "user", "x", token_count=99)

            logs = await store.get_conversation_logs("conv_1")
            assert [e.content for e in logs] == ["m0", "m1", "m2", "m3", "m4"]
            assert logs[0].metadata == {"i": 0}

            page = await store.get_conversation_logs("conv_1", limit=2, offset=1)
            assert [e.content for e in page] == ["m1", "m2"]

            recent = await store.get_recent_conversation_logs("conv_1", limit=3)
            assert [e.content for e in recent] == ["m2", "m3", "m4"]

            assert await store.get_conversation_token_count("conv_1") == 40
            assert await store.get_conversation_token_count("empty") == 0
        finally:
            await store.close()

    async def test_delete_old_logs(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            for i in range(6):
                await store.append_conversation_log("conv_1", "user", f"m{i}")
            await store.append_conversation_log("conv_2", "user", "keep me")

            assert await store.delete_old_logs("conv_1", keep_count=2) == 4
            assert [e.content for e in await store.get_conversation_logs("conv_1")] == ["m4", "m5"]
            assert len(await store.get_conversation_logs("conv_2")) == 1
            assert await store.delete_old_logs("conv_1", keep_count=10) == 0
        finally:
            await store.close()


@backends
class TestTokenUsage:

    async def test_monthly_total(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            await store.record_token_usage("t1", "anthropic", "m", 100, 10, cost_usd=0.25)
            await store.record_token_usage("t2", "openai", "m", 100, 10, cached_tokens=50, cost_usd=0.5)
            assert await store.get_monthly_total_cost() == pytest.approx(0.75)

            far_future = datetime(2099, 1, 15, tzinfo=timezone.utc)
            assert await store.get_monthly_total_cost(now=far_future) == 0.0
        finally:
            await store.close()


@backends
class TestKnowledge:

    async def test_newest_first(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            await store.upsert_knowledge("fact", "city", "Paris", source_conversation_id="c1")
            await store.upsert_knowledge("fact", "city", "Lyon", confidence=0.7)
            await store.upsert_knowledge("fact", "dog", "Rex")

            entries = await store.get_knowledge("fact", "city")
            assert [e.value for e in entries] == ["Lyon", "Paris"]
            assert entries[0].confidence == pytest.approx(0.7)
            assert entries[1].source_conversation_id == "c1"
            assert await store.get_knowledge("fact", "none") == []
        finally:
            await store.close()


class TestMonthBounds:

    async def test_naive_datetime_treated_as_utc(self):
        assert month_bounds(datetime(2025, 3, 10)) == month_bounds(
            datetime(2025, 3, 10, tzinfo=timezone.utc),
        )

    async def test_december_rolls_over(self):
        start, end = month_bounds(datetime(2025, 12, 15, tzinfo=timezone.utc))
        assert start == datetime(2025, 12, 1, tzinfo=timezone.utc).timestamp()
        assert end == datetime(2026, 1, 1, tzinfo=timezone.utc).timestamp()
