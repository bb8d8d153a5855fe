"""
cost/budget.py — Budget Predicates

Pure comparisons used by the agent loop's budget gates. An estimate that
lands exactly on the limit is still affordable.
"""

from __future__ import annotations


def can_afford(task_spent_usd: float, task_budget_usd: float, estimated_cost_usd: float) -> bool:
    """True when the next expense fits inside the task budget."""
    return (task_spent_usd + estimated_cost_usd) <= task_budget_usd


def is_within_monthly_budget(
    monthly_spent_usd: float,
    monthly_limit_usd: float,
    estimated_cost_usd: float,
) -> bool:
    """True when the next expense fits inside the monthly limit."""
    return (monthly_spent_usd + estimated_cost_usd) <= monthly_limit_usd


def is_approaching_budget(spent_usd: float, limit_usd: float, warning_threshold_pct: float) -> bool:
    """True once spending reaches `warning_threshold_pct` (e.g. 0.8) of the limit."""
    return spent_usd >= (limit_usd * warning_threshold_pct)
