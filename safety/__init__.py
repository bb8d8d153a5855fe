"""
safety/__init__.py — PocketClaw Safety Module
"""

from safety.injection import (
    SanitizationResult,
    Threat,
    ThreatPattern,
    ThreatSeverity,
    check_for_injection,
)

__all__ = [
    "SanitizationResult",
    "Threat",
    "ThreatPattern",
    "ThreatSeverity",
    "check_for_injection",
]
