"""
Condition Evaluator — pure rule evaluation over a metrics snapshot.

No I/O, no state: the same snapshot against the same RuleSet always
yields the same set of satisfied condition ids.
"""

import math
from typing import Optional

from cashguard.alerting.rules import ConditionRule, RuleSet
from cashguard.alerting.schemas import MetricsSnapshot, RuleOperator, SNAPSHOT_METRIC_FIELDS

DAYS_PER_MONTH = 30


def derive_runway_days(balance: float, monthly_burn: float) -> float:
    """
    Runway in days from balance and monthly burn.

    No burn (zero or negative) means the cash never runs out; an empty or
    overdrawn balance with positive burn means it already has.
    """
    if balance > 0 and monthly_burn > 0:
        return balance / monthly_burn * DAYS_PER_MONTH
    if monthly_burn <= 0:
        return math.inf
    return 0.0


def snapshot_metrics(snapshot: MetricsSnapshot) -> dict[str, Optional[float]]:
    """Metric name → value, with runway_days filled in when not supplied."""
    values = {name: getattr(snapshot, name) for name in SNAPSHOT_METRIC_FIELDS}
    if values["runway_days"] is None:
        values["runway_days"] = derive_runway_days(
            snapshot.current_cash_balance, snapshot.monthly_burn_rate
        )
    return values


def check_condition(operator: RuleOperator, value: float, threshold: float) -> bool:
    """Evaluate a rule condition."""
    if operator == RuleOperator.GT:
        return value > threshold
    elif operator == RuleOperator.GTE:
        return value >= threshold
    elif operator == RuleOperator.LT:
        return value < threshold
    elif operator == RuleOperator.LTE:
        return value <= threshold
    elif operator == RuleOperator.EQ:
        return abs(value - threshold) < 1e-9
    elif operator == RuleOperator.NEQ:
        return abs(value - threshold) >= 1e-9
    return False


def rule_satisfied(rule: ConditionRule, metrics: dict[str, Optional[float]]) -> bool:
    value = metrics.get(rule.metric)
    if value is None:
        return False
    return check_condition(rule.operator, value, rule.threshold)


def evaluate_conditions(snapshot: MetricsSnapshot, rules: RuleSet) -> frozenset[str]:
    """Return the ids of every rule the snapshot satisfies."""
    metrics = snapshot_metrics(snapshot)
    return frozenset(r.condition_id for r in rules if rule_satisfied(r, metrics))
