"""
tests/unit/test_cost.py — Pricing and Budget Predicates

Covers:
  - calculate_cost for known, unknown and cached-token calls
  - tier lookup
  - can_afford / is_within_monthly_budget boundary semantics
  - is_approaching_budget warning threshold
"""

from __future__ import annotations

import pytest

from cost.budget import can_afford, is_approaching_budget, is_within_monthly_budget
from cost.pricing import (
    MODEL_PRICING,
    ModelTier,
    calculate_cost,
    get_model_pricing,
    get_models_by_tier,
)


class TestCalculateCost:

    def test_known_model(self):
        # Haiku: $0.001 / 1k input, $0.005 / 1k output
        assert calculate_cost("claude-haiku-4-5-20251001", 1000, 1000) == pytest.approx(0.006)

    def test_unknown_model_is_free(self):
        assert calculate_cost("mystery-model", 10_000, 10_000) == 0.0

    def test_cached_tokens_billed_at_cached_rate(self):
        model = "claude-sonnet-4-5-20250929"
        # 200 regular at 0.003/1k + 800 cached at 0.0003/1k
        expected = 0.2 * 0.003 + 0.8 * 0.0003
        assert calculate_cost(model, 1000, 0, cached_tokens=800) == pytest.approx(expected)

    def test_cached_tokens_never_make_input_negative(self):
        model = "gpt-4o"
        cost = calculate_cost(model, 100, 0, cached_tokens=500)
        assert cost == pytest.approx(0.5 * MODEL_PRICING[model].cached_input_per_1k)

    def test_local_models_cost_nothing(self):
        assert calculate_cost("ollama/llama3.2", 5000, 5000) == 0.0

    def test_zero_tokens(self):
        assert calculate_cost("gpt-4o", 0, 0) == 0.0


class TestPricingTable:

    def test_lookup(self):
        pricing = get_model_pricing("gpt-4o-mini")
        assert pricing is not None
        assert pricing.tier == ModelTier.SMALL
        assert get_model_pricing("nope") is None

    def test_models_by_tier(self):
        large = get_models_by_tier("large")
        assert large == ["claude-opus-4-6"]
        assert "gpt-4o" in get_models_by_tier(ModelTier.MEDIUM)

    def test_pricing_is_immutable(self):
        with pytest.raises(Exception):
            MODEL_PRICING["gpt-4o"].input_per_1k = 0.0


class TestBudgetPredicates:

    def test_can_afford_boundary_is_inclusive(self):
        assert can_afford(0.25, 0.50, 0.25) is True
        assert can_afford(0.25, 0.50, 0.2500001) is False

    def test_can_afford_zero_budget(self):
        assert can_afford(0.0, 0.0, 0.0) is True
        assert can_afford(0.0, 0.0, 0.0001) is False

    def test_monthly_budget(self):
        assert is_within_monthly_budget(19.0, 20.0, 1.0) is True
        assert is_within_monthly_budget(20.5, 20.0, 0.0) is False

    def test_approaching_budget(self):
        assert is_approaching_budget(16.0, 20.0, 0.8) is True
        assert is_approaching_budget(15.99, 20.0, 0.8) is False
