"""
cost/__init__.py — PocketClaw Cost Control

Deterministic pricing and budget checks. Nothing here calls a model.
"""

from cost.budget import can_afford, is_approaching_budget, is_within_monthly_budget
from cost.pricing import (
    MODEL_PRICING,
    ModelPricing,
    ModelTier,
    calculate_cost,
    get_model_pricing,
    get_models_by_tier,
)

__all__ = [
    "MODEL_PRICING",
    "ModelPricing",
    "ModelTier",
    "calculate_cost",
    "get_model_pricing",
    "get_models_by_tier",
    "can_afford",
    "is_within_monthly_budget",
    "is_approaching_budget",
]
