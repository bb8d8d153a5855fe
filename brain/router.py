"""
brain/router.py — Deterministic Model Router

Picks a model for each request without spending a model call:

  1. classify_complexity() maps the raw user text to a tier
     (small / medium / large) from word count, keywords and
     multi-step markers.
  2. select_model() walks the tier's preference list and returns the
     first model whose provider is enabled, then falls back to any
     priced model of the same tier.

Usage:
    tier = classify_complexity(text, has_active_skill=False)
    selection = select_model(tier, ["openai", "ollama"])
"""

from __future__ import annotations

import re
from typing import Optional

from pydantic import BaseModel

from cost.pricing import MODEL_PRICING, ModelTier
from exceptions import RoutingError

# ─────────────────────────────────────────────────────────────────────────────
# Classification rules
# ─────────────────────────────────────────────────────────────────────────────

_LARGE_TIER_KEYWORDS = (
    "analyze",
    "compare",
    "comprehensive",
    "detailed",
    "write a",
    "create a",
    "thorough",
    "in-depth",
    "exhaustive",
    "step by step",
    "step-by-step",
    "multi-step",
    "explain in detail",
)

_CHAIN_WORDS = ("then", "after that", "next", "finally", "also", "and then")

_NUMBERED_STEP_RE = re.compile(r"\d+\.\s")
_BULLET_RE = re.compile(r"[-*]\s")

_SMALL_WORD_LIMIT = 20
_LARGE_WORD_LIMIT = 100

# First enabled entry wins. Entries without pricing cost 0 to estimate.
TIER_PREFERENCES: dict[ModelTier, list[tuple[str, str]]] = {
    ModelTier.SMALL: [
        ("claude-haiku-4-5-20251001", "anthropic"),
        ("gpt-4o-mini", "openai"),
        ("gemini-2.0-flash", "gemini"),
        ("deepseek-chat", "deepseek"),
        ("ollama/llama3.2", "ollama"),
        ("ollama/qwen2.5", "ollama"),
    ],
    ModelTier.MEDIUM: [
        ("claude-sonnet-4-5-20250929", "anthropic"),
        ("gpt-4o", "openai"),
        ("gemini-2.0-pro", "gemini"),
        ("gpt-4.1", "openai"),
    ],
    ModelTier.LARGE: [
        ("claude-opus-4-6", "anthropic"),
        ("gpt-4o", "openai"),
        ("claude-sonnet-4-5-20250929", "anthropic"),
    ],
}

_PROVIDER_PREFIXES = (
    ("claude-", "anthropic"),
    ("gpt-", "openai"),
    ("gemini-", "gemini"),
    ("deepseek-", "deepseek"),
    ("ollama/", "ollama"),
)


class ModelSelection(BaseModel):
    provider: str
    model: str
    tier: ModelTier
    estimated_cost_usd: float = 0.0
    reasoning: str = ""


# ─────────────────────────────────────────────────────────────────────────────
# Complexity classification
# ─────────────────────────────────────────────────────────────────────────────


def _word_count(text: str) -> int:
    return len(text.split())


def _contains_large_keyword(lower: str) -> bool:
    return any(keyword in lower for keyword in _LARGE_TIER_KEYWORDS)


def _is_multi_step(lower: str) -> bool:
    if len(_NUMBERED_STEP_RE.findall(lower)) >= 2:
        return True
    if len(_BULLET_RE.findall(lower)) >= 2:
        return True
    chained = sum(1 for word in _CHAIN_WORDS if word in lower)
    return chained >= 2


def classify_complexity(text: str, has_active_skill: bool = False) -> ModelTier:
    """
    Classify a user message into a model tier.

    large:  any large-tier keyword, a multi-step request, or > 100 words
    small:  fewer than 20 words (questions included)
    medium: everything else

    `has_active_skill` is accepted for callers that track skills; an
    active skill never promotes a short message.
    """
    lower = text.lower()
    words = _word_count(text)

    if _contains_large_keyword(lower) or _is_multi_step(lower) or words > _LARGE_WORD_LIMIT:
        return ModelTier.LARGE
    if words < _SMALL_WORD_LIMIT:
        return ModelTier.SMALL
    return ModelTier.MEDIUM


# ─────────────────────────────────────────────────────────────────────────────
# Model selection
# ─────────────────────────────────────────────────────────────────────────────


def derive_provider_from_model(model: str) -> Optional[str]:
    """Provider id implied by a model name prefix, or None."""
    for prefix, provider in _PROVIDER_PREFIXES:
        if model.startswith(prefix):
            return provider
    return None


def _estimate_for(model: str) -> float:
    # Rough cost of ~1k tokens in each direction
    pricing = MODEL_PRICING.get(model)
    if pricing is None:
        return 0.0
    return pricing.input_per_1k + pricing.output_per_1k


def select_model(tier: ModelTier | str, enabled_providers: list[str]) -> ModelSelection:
    """
    Pick the best available model for `tier`.

    Raises:
        RoutingError: no preferred or same-tier model has an enabled provider.
    """
    tier = ModelTier(tier)

    for model, provider in TIER_PREFERENCES[tier]:
        if provider in enabled_providers:
            return ModelSelection(
                provider=provider,
                model=model,
                tier=tier,
                estimated_cost_usd=_estimate_for(model),
                reasoning=f"Selected {model} as preferred {tier.value}-tier model from {provider}",
            )

    # Fallback: any priced model of the same tier
    for model, pricing in MODEL_PRICING.items():
        if pricing.tier != tier:
            continue
        provider = derive_provider_from_model(model)
        if provider and provider in enabled_providers:
            return ModelSelection(
                provider=provider,
                model=model,
                tier=tier,
                estimated_cost_usd=_estimate_for(model),
                reasoning=f"Fallback: selected {model} ({provider}) for {tier.value} tier",
            )

    raise RoutingError(
        f"No model available for tier '{tier.value}' with enabled providers: "
        f"[{', '.join(enabled_providers)}]"
    )
