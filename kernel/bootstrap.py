"""
kernel/bootstrap.py — PocketClaw Core Wiring

Builds the orchestration core from a Settings object:

    store       → InMemoryStore or SQLiteStore (settings.persistence.backend)
    agent_loop  → AgentLoop.from_settings(...)
    task_pool   → TaskPool.from_settings(...)

Usage:
    settings = load_settings()
    core = await bootstrap_core(settings, provider=my_provider)
    result = await core.task_pool.submit("conv_1", "hello", "cli")
    await core.aclose()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from brain.provider import BaseProvider
from observability.logger import get_logger
from orchestrator.agent_loop import AgentLoop
from orchestrator.task_pool import TaskPool
from orchestrator.utils import wait_for_background_tasks
from persistence.in_memory import InMemoryStore
from persistence.sqlite_store import SQLiteStore
from persistence.store import BaseStore
from tools.registry import ToolRegistry

log = get_logger(__name__)


@dataclass
class CoreStack:
    store: BaseStore
    agent_loop: AgentLoop
    task_pool: TaskPool

    async def aclose(self, timeout: Optional[float] = None) -> None:
        """Drain the pool, let detached work finish, then close the store."""
        await self.task_pool.shutdown(timeout=timeout)
        await wait_for_background_tasks(timeout=timeout)
        await self.store.close()
        log.info("core.closed")


async def build_store(settings) -> BaseStore:
    """Create and initialise the store selected by settings.persistence."""
    cfg = settings.persistence
    if cfg.backend == "memory":
        store: BaseStore = InMemoryStore()
    else:
        store = SQLiteStore(db_path=cfg.sqlite_path)
    await store.init()
    log.info("core.store_ready", backend=cfg.backend)
    return store


async def bootstrap_core(
    settings,
    provider: BaseProvider,
    tool_registry: Optional[ToolRegistry] = None,
    store: Optional[BaseStore] = None,
) -> CoreStack:
    """
    Wire the store, agent loop and task pool.

    A caller-supplied `store` is used as-is and is expected to be
    initialised already.
    """
    if store is None:
        store = await build_store(settings)

    agent_loop = AgentLoop.from_settings(
        settings,
        store=store,
        provider=provider,
        tool_registry=tool_registry,
    )
    task_pool = TaskPool.from_settings(agent_loop, settings)

    log.info(
        "core.ready",
        provider=provider.name,
        enabled_providers=settings.enabled_providers,
        max_concurrent=task_pool.max_concurrent,
        tools=len(tool_registry) if tool_registry is not None else 0,
    )
    return CoreStack(store=store, agent_loop=agent_loop, task_pool=task_pool)
