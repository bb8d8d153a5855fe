"""
kernel/ — PocketClaw Core Public API

The single entry-point for wiring the orchestration core. Callers (channel
adapters, tests, future integrations) import from here rather than
assembling the store, agent loop and task pool by hand.

Exports:
    CoreStack      — the wired store, agent loop and task pool
    bootstrap_core — build a CoreStack from Settings
    build_store    — create and initialise the configured store
"""

from kernel.bootstrap import CoreStack, bootstrap_core, build_store

__all__ = ["CoreStack", "bootstrap_core", "build_store"]
