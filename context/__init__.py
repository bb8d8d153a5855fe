"""
context/__init__.py — PocketClaw Context Assembly
"""

from context.builder import ContextBuilder, ContextPayload, estimate_tokens
from context.summarizer import (
    KeyFact,
    SummarizationResult,
    extract_key_facts,
    needs_summarization,
    summarize_conversation,
)

__all__ = [
    "ContextBuilder",
    "ContextPayload",
    "estimate_tokens",
    "KeyFact",
    "SummarizationResult",
    "extract_key_facts",
    "needs_summarization",
    "summarize_conversation",
]
