"""
observability/ — PocketClaw Logging

Public API:
    from observability import get_logger, setup_logging
"""

from observability.logger import (
    bind_task,
    clear_task,
    get_logger,
    setup_logging,
    setup_logging_from_settings,
)

__all__ = [
    "bind_task",
    "clear_task",
    "get_logger",
    "setup_logging",
    "setup_logging_from_settings",
]
