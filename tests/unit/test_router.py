"""
tests/unit/test_router.py — Deterministic Model Router

Covers:
  - classify_complexity: short, medium, long, keyword, multi-step inputs
  - select_model: preference order, provider filtering, same-tier fallback
  - RoutingError when nothing is enabled
"""

from __future__ import annotations

import pytest

from brain.router import classify_complexity, derive_provider_from_model, select_model
from cost.pricing import ModelTier
from exceptions import RoutingError


def _words(n: int) -> str:
    return " ".join(["word"] * n)


class TestClassifyComplexity:

    @pytest.mark.parametrize("text, tier", [
        ("hi", ModelTier.SMALL),
        ("What's the weather like in Paris today?", ModelTier.SMALL),
        (_words(19), ModelTier.SMALL),
        (_words(20), ModelTier.MEDIUM),
        (_words(100), ModelTier.MEDIUM),
        (_words(101), ModelTier.LARGE),
    ])
    def test_word_count_tiers(self, text, tier):
        assert classify_complexity(text) == tier

    def test_keyword_promotes_short_message(self):
        assert classify_complexity("Analyze my spending") == ModelTier.LARGE
        assert classify_complexity("Write a haiku") == ModelTier.LARGE

    def test_numbered_steps(self):
        assert classify_complexity("1. book flight 2. book hotel") == ModelTier.LARGE

    def test_bullets(self):
        assert classify_complexity("- milk\n- eggs\n- bread") == ModelTier.LARGE

    def test_chain_words(self):
        text = "check my mail then reply to Bob and finally archive it"
        assert classify_complexity(text) == ModelTier.LARGE

    def test_single_chain_word_is_not_multi_step(self):
        assert classify_complexity("check mail then stop") == ModelTier.SMALL

    def test_active_skill_does_not_promote(self):
        assert classify_complexity("hi", has_active_skill=True) == ModelTier.SMALL


class TestSelectModel:

    def test_first_preference_wins(self):
        selection = select_model(ModelTier.SMALL, ["anthropic", "openai"])
        assert selection.model == "claude-haiku-4-5-20251001"
        assert selection.provider == "anthropic"
        assert selection.tier == ModelTier.SMALL
        assert selection.estimated_cost_usd == pytest.approx(0.006)

    def test_skips_disabled_providers(self):
        selection = select_model("medium", ["openai"])
        assert selection.model == "gpt-4o"
        assert selection.provider == "openai"

    def test_large_tier_can_route_to_medium_model(self):
        selection = select_model(ModelTier.LARGE, ["openai"])
        assert selection.model == "gpt-4o"

    def test_local_provider(self):
        selection = select_model(ModelTier.SMALL, ["ollama"])
        assert selection.model == "ollama/llama3.2"
        assert selection.estimated_cost_usd == 0.0

    def test_no_model_for_tier(self):
        with pytest.raises(RoutingError, match="large"):
            select_model(ModelTier.LARGE, ["ollama"])

    def test_nothing_enabled(self):
        with pytest.raises(RoutingError):
            select_model(ModelTier.SMALL, [])


class TestDeriveProvider:

    @pytest.mark.parametrize("model, provider", [
        ("claude-opus-4-6", "anthropic"),
        ("gpt-4.1", "openai"),
        ("gemini-2.0-flash", "gemini"),
        ("deepseek-chat", "deepseek"),
        ("ollama/qwen2.5", "ollama"),
        ("mistral-large", None),
    ])
    def test_prefixes(self, model, provider):
        assert derive_provider_from_model(model) == provider
