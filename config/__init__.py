"""
config/ — PocketClaw Runtime Configuration

Public API:
    from config import Settings, load_settings, get_settings
"""

from config.settings import ConfigError, Settings, get_settings, load_settings

__all__ = ["ConfigError", "Settings", "get_settings", "load_settings"]
