"""
safety/injection.py — Prompt Injection Detector

Scans inbound user messages and external content (tool output, fetched
pages) for injection attempts before they enter the model context.

Content is flagged, never modified. Only HIGH severity threats make the
input unclean; MEDIUM threats are reported so callers can log them.

Patterns fall into two groups:
  - applied to every source (instruction overrides, role delimiters)
  - applied to source="external" only (role impersonation, tool name
    mentions, prompt extraction, base64-encoded instructions)
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from observability.logger import get_logger

log = get_logger(__name__)

ContentSource = Literal["user", "external"]


class ThreatSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class ThreatPattern:
    name: str
    pattern: re.Pattern
    severity: ThreatSeverity
    description: str
    external_only: bool = False


class Threat(BaseModel):
    type: str
    description: str
    severity: ThreatSeverity


class SanitizationResult(BaseModel):
    is_clean: bool
    threats: list[Threat] = Field(default_factory=list)
    sanitized_input: str = ""

    @property
    def threat_types(self) -> list[str]:
        return [t.type for t in self.threats]


# ─────────────────────────────────────────────────────────────────────────────
# Threat patterns
# ─────────────────────────────────────────────────────────────────────────────

THREAT_PATTERNS: list[ThreatPattern] = [
    # Instruction override
    ThreatPattern(
        name="instruction_override",
        pattern=re.compile(
            r"ignore\s+(all\s+)?(previous|prior|above)\s+(instructions|prompts|rules)",
            re.IGNORECASE,
        ),
        severity=ThreatSeverity.HIGH,
        description="Attempts to override system instructions",
    ),
    ThreatPattern(
        name="instruction_override",
        pattern=re.compile(
            r"disregard\s+(all\s+)?(previous|prior|above|your)\s+"
            r"(instructions|prompts|rules|guidelines)",
            re.IGNORECASE,
        ),
        severity=ThreatSeverity.HIGH,
        description="Attempts to disregard system instructions",
    ),
    ThreatPattern(
        name="instruction_override",
        pattern=re.compile(
            r"forget\s+(all\s+)?(previous|prior|above|your)\s+(instructions|prompts|rules)",
            re.IGNORECASE,
        ),
        severity=ThreatSeverity.HIGH,
        description="Attempts to make the agent forget its instructions",
    ),
    # Role impersonation
    ThreatPattern(
        name="role_impersonation",
        pattern=re.compile(r"you\s+are\s+(now|actually)\s+", re.IGNORECASE),
        severity=ThreatSeverity.HIGH,
        description="External content tries to change the agent role",
        external_only=True,
    ),
    ThreatPattern(
        name="role_impersonation",
        pattern=re.compile(r"\bact\s+as\s+(a\s+)?", re.IGNORECASE),
        severity=ThreatSeverity.MEDIUM,
        description="External content tries to assign a new role",
        external_only=True,
    ),
    ThreatPattern(
        name="role_impersonation",
        pattern=re.compile(r"you\s+must\s+(now\s+)?obey", re.IGNORECASE),
        severity=ThreatSeverity.HIGH,
        description="External content demands obedience",
        external_only=True,
    ),
    # Delimiter injection
    ThreatPattern(
        name="delimiter_injection",
        pattern=re.compile(
            r"</?system>|</?user>|\[INST\]|\[/INST\]|<\|im_start\|>|<\|im_end\|>",
            re.IGNORECASE,
        ),
        severity=ThreatSeverity.HIGH,
        description="Attempts to inject role delimiters",
    ),
    ThreatPattern(
        name="delimiter_injection",
        pattern=re.compile(r"```system\b|```assistant\b", re.IGNORECASE),
        severity=ThreatSeverity.MEDIUM,
        description="Attempts to inject a role via code blocks",
    ),
    # Tool abuse
    ThreatPattern(
        name="tool_name_mention",
        pattern=re.compile(
            r"\b(execute_shell|write_file|http_request|schedule_task|read_file|"
            r"list_directory|knowledge_store)\b",
            re.IGNORECASE,
        ),
        severity=ThreatSeverity.MEDIUM,
        description="External content mentions tool names",
        external_only=True,
    ),
    # System prompt extraction
    ThreatPattern(
        name="prompt_extraction",
        pattern=re.compile(
            r"\b(show|reveal|output|print|display|repeat)\s+(your\s+)?(system\s+)?"
            r"(prompt|instructions|rules)",
            re.IGNORECASE,
        ),
        severity=ThreatSeverity.MEDIUM,
        description="Attempts to extract the system prompt",
        external_only=True,
    ),
]

_BASE64_RE = re.compile(r"[A-Za-z0-9+/]{20,}={0,2}")
_SUSPICIOUS_DECODED_RE = re.compile(
    r"ignore|execute|run|delete|send|override|bypass|admin|root|sudo",
    re.IGNORECASE,
)


# ─────────────────────────────────────────────────────────────────────────────
# Detector
# ─────────────────────────────────────────────────────────────────────────────


def _decode_base64(candidate: str) -> str:
    padded = candidate + "=" * (-len(candidate) % 4)
    try:
        return base64.b64decode(padded).decode("utf-8", errors="ignore")
    except (binascii.Error, ValueError):
        return ""


def check_for_injection(text: str, source: ContentSource = "user") -> SanitizationResult:
    """
    Check `text` for prompt injection patterns.

    Args:
        text:   The content to scan.
        source: "user" for inbound messages, "external" for tool output
                and fetched content. External content gets extra checks.

    Returns:
        SanitizationResult. is_clean is False only when a HIGH severity
        threat matched; sanitized_input is always the unmodified text.
    """
    threats: list[Threat] = []

    for threat_pattern in THREAT_PATTERNS:
        if threat_pattern.external_only and source != "external":
            continue
        if threat_pattern.pattern.search(text):
            threats.append(Threat(
                type=threat_pattern.name,
                description=threat_pattern.description,
                severity=threat_pattern.severity,
            ))

    if source == "external":
        match = _BASE64_RE.search(text)
        if match and _SUSPICIOUS_DECODED_RE.search(_decode_base64(match.group(0))):
            threats.append(Threat(
                type="encoded_instruction",
                description="Base64-encoded suspicious instruction detected",
                severity=ThreatSeverity.MEDIUM,
            ))

    is_clean = not any(t.severity == ThreatSeverity.HIGH for t in threats)

    if not is_clean:
        log.warning(
            "safety.injection_detected",
            source=source,
            threat_count=len(threats),
            threats=[t.type for t in threats],
        )

    return SanitizationResult(is_clean=is_clean, threats=threats, sanitized_input=text)
