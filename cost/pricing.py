"""
cost/pricing.py — Model Pricing Table

Per-model USD pricing (per 1,000 tokens), tier and capability data, plus
the cost arithmetic the agent loop uses for every budget gate.

Usage:
    from cost.pricing import calculate_cost

    cost = calculate_cost("gpt-4o", input_tokens=1200, output_tokens=300)
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ModelTier(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class ModelPricing(BaseModel):
    model_config = ConfigDict(frozen=True)

    input_per_1k: float
    output_per_1k: float
    cached_input_per_1k: float
    tier: ModelTier
    context_window: int
    supports_tools: bool = True


MODEL_PRICING: dict[str, ModelPricing] = {
    # Anthropic
    "claude-haiku-4-5-20251001": ModelPricing(
        input_per_1k=0.001, output_per_1k=0.005, cached_input_per_1k=0.0001,
        tier=ModelTier.SMALL, context_window=200_000,
    ),
    "claude-sonnet-4-5-20250929": ModelPricing(
        input_per_1k=0.003, output_per_1k=0.015, cached_input_per_1k=0.0003,
        tier=ModelTier.MEDIUM, context_window=200_000,
    ),
    "claude-opus-4-6": ModelPricing(
        input_per_1k=0.015, output_per_1k=0.075, cached_input_per_1k=0.0015,
        tier=ModelTier.LARGE, context_window=200_000,
    ),
    # OpenAI
    "gpt-4o-mini": ModelPricing(
        input_per_1k=0.00015, output_per_1k=0.0006, cached_input_per_1k=0.000075,
        tier=ModelTier.SMALL, context_window=128_000,
    ),
    "gpt-4o": ModelPricing(
        input_per_1k=0.0025, output_per_1k=0.01, cached_input_per_1k=0.00125,
        tier=ModelTier.MEDIUM, context_window=128_000,
    ),
    "gpt-4.1": ModelPricing(
        input_per_1k=0.002, output_per_1k=0.008, cached_input_per_1k=0.001,
        tier=ModelTier.MEDIUM, context_window=1_000_000,
    ),
    # DeepSeek
    "deepseek-chat": ModelPricing(
        input_per_1k=0.00014, output_per_1k=0.00028, cached_input_per_1k=0.00007,
        tier=ModelTier.SMALL, context_window=64_000,
    ),
    # Local (Ollama)
    "ollama/llama3.2": ModelPricing(
        input_per_1k=0.0, output_per_1k=0.0, cached_input_per_1k=0.0,
        tier=ModelTier.SMALL, context_window=8192, supports_tools=False,
    ),
    "ollama/qwen2.5": ModelPricing(
        input_per_1k=0.0, output_per_1k=0.0, cached_input_per_1k=0.0,
        tier=ModelTier.SMALL, context_window=32_768,
    ),
}


def get_model_pricing(model: str) -> Optional[ModelPricing]:
    """Pricing entry for `model`, or None when the model is unknown."""
    return MODEL_PRICING.get(model)


def calculate_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    cached_tokens: int = 0,
) -> float:
    """
    Cost in USD of one call.

    Cached input tokens are billed at the cached rate and removed from the
    regular input count. Unknown models cost 0.
    """
    pricing = MODEL_PRICING.get(model)
    if pricing is None:
        return 0.0

    non_cached = max(0, input_tokens - cached_tokens)
    input_cost = (non_cached / 1000) * pricing.input_per_1k
    cached_cost = (cached_tokens / 1000) * pricing.cached_input_per_1k
    output_cost = (output_tokens / 1000) * pricing.output_per_1k
    return input_cost + cached_cost + output_cost


def get_models_by_tier(tier: ModelTier | str) -> list[str]:
    tier = ModelTier(tier)
    return [name for name, pricing in MODEL_PRICING.items() if pricing.tier == tier]
