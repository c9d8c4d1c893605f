"""
Condition Rules — the static catalog of trigger conditions.

Each rule is data: a metric name, an operator and a threshold. Adding a
condition means adding an entry here, not a new code path.
"""

from typing import Iterable, Iterator, Optional

from pydantic import BaseModel, ConfigDict

from cashguard.alerting.schemas import AlertSeverity, RuleCategory, RuleOperator
from cashguard.config import Settings, settings as default_settings
from cashguard.exceptions import UnknownConditionError


class ConditionRule(BaseModel):
    """A named predicate over one snapshot metric."""
    model_config = ConfigDict(frozen=True)

    condition_id: str
    label: str
    severity: AlertSeverity
    category: RuleCategory = RuleCategory.FINANCIAL
    metric: str
    operator: RuleOperator
    threshold: float
    subject_template: str
    message_template: str
    description: str = ""


class RuleSet:
    """Ordered, immutable collection of ConditionRules."""

    def __init__(self, rules: Iterable[ConditionRule] = ()):
        self._rules: tuple[ConditionRule, ...] = tuple(rules)
        self._by_id: dict[str, ConditionRule] = {}
        for rule in self._rules:
            if rule.condition_id in self._by_id:
                raise ValueError(f"Duplicate condition id: {rule.condition_id}")
            self._by_id[rule.condition_id] = rule

    def __iter__(self) -> Iterator[ConditionRule]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, condition_id: object) -> bool:
        return condition_id in self._by_id

    def get(self, condition_id: str) -> Optional[ConditionRule]:
        return self._by_id.get(condition_id)

    @property
    def condition_ids(self) -> list[str]:
        return [r.condition_id for r in self._rules]

    def select(self, condition_ids: Optional[Iterable[str]]) -> "RuleSet":
        """
        Subset by condition id, keeping catalog order.

        None selects everything. Unknown ids raise UnknownConditionError.
        """
        if condition_ids is None:
            return self
        wanted = set(condition_ids)
        unknown = wanted - self._by_id.keys()
        if unknown:
            raise UnknownConditionError(sorted(unknown))
        return RuleSet(r for r in self._rules if r.condition_id in wanted)


def default_rule_set(cfg: Optional[Settings] = None) -> RuleSet:
    """Build the default trigger catalog from settings thresholds."""
    cfg = cfg or default_settings
    return RuleSet([
        ConditionRule(
            condition_id="critical-cash-runway",
            label="Critical Cash Runway Alert",
            description=f"Cash runway at or below {cfg.critical_runway_days:g} days",
            severity=AlertSeverity.CRITICAL,
            metric="runway_days",
            operator=RuleOperator.LTE,
            threshold=cfg.critical_runway_days,
            subject_template="🚨 Critical: {organization_name} has {runway_days_floor} days of cash remaining",
            message_template=(
                "Your organization {organization_name} has reached a critical cash "
                "runway of {runway_days_floor} days."
            ),
        ),
        ConditionRule(
            condition_id="low-cash-runway",
            label="Low Cash Runway Warning",
            description=f"Cash runway at or below {cfg.low_runway_days:g} days",
            severity=AlertSeverity.WARNING,
            metric="runway_days",
            operator=RuleOperator.LTE,
            threshold=cfg.low_runway_days,
            subject_template="⚠️ Warning: {organization_name} has {runway_days_floor} days of cash remaining",
            message_template=(
                "Your organization {organization_name} has a low cash runway of "
                "{runway_days_floor} days. Consider reviewing your financial strategy "
                "and exploring funding options."
            ),
        ),
        ConditionRule(
            condition_id="negative-mrr-growth",
            label="Negative MRR Growth",
            description="Monthly recurring revenue growth turned negative",
            severity=AlertSeverity.WARNING,
            metric="mrr_growth_pct",
            operator=RuleOperator.LT,
            threshold=0.0,
            subject_template="📉 MRR Growth Alert: Negative growth detected",
            message_template=(
                "Monthly recurring revenue for {organization_name} changed by "
                "{value:.1f}% this period."
            ),
        ),
        ConditionRule(
            condition_id="high-churn-rate",
            label="High Churn Rate Alert",
            description=f"Customer churn above {cfg.churn_rate_threshold_pct:g}%",
            severity=AlertSeverity.WARNING,
            category=RuleCategory.CUSTOMER,
            metric="churn_rate_pct",
            operator=RuleOperator.GT,
            threshold=cfg.churn_rate_threshold_pct,
            subject_template="🚪 High Churn Alert: {value:.1f}% churn rate",
            message_template=(
                "Customer churn rate for {organization_name} has reached {value:.1f}%, "
                "exceeding the {threshold:g}% threshold."
            ),
        ),
        ConditionRule(
            condition_id="failed-payments",
            label="Failed Payment Alerts",
            description=f"Payment failures above {cfg.payment_failure_threshold_pct:g}% of transactions",
            severity=AlertSeverity.WARNING,
            metric="payment_failure_rate_pct",
            operator=RuleOperator.GT,
            threshold=cfg.payment_failure_threshold_pct,
            subject_template="💳 Failed Payment Alert",
            message_template=(
                "Payment failures for {organization_name} have reached {value:.1f}% "
                "of total transactions."
            ),
        ),
        ConditionRule(
            condition_id="subscription-cancellations",
            label="Subscription Cancellation Spike",
            description=(
                f"Cancellations up more than {cfg.cancellation_increase_threshold_pct:g}% "
                "week-over-week"
            ),
            severity=AlertSeverity.WARNING,
            category=RuleCategory.CUSTOMER,
            metric="cancellation_increase_pct",
            operator=RuleOperator.GT,
            threshold=cfg.cancellation_increase_threshold_pct,
            subject_template="📊 Subscription Cancellation Spike",
            message_template=(
                "Subscription cancellations for {organization_name} increased by "
                "{value:.1f}% week-over-week."
            ),
        ),
        ConditionRule(
            condition_id="data-sync-delays",
            label="Data Sync Delays",
            description=f"Financial data not updated for more than {cfg.data_sync_delay_hours:g} hours",
            severity=AlertSeverity.WARNING,
            category=RuleCategory.SYSTEM,
            metric="hours_since_last_sync",
            operator=RuleOperator.GT,
            threshold=cfg.data_sync_delay_hours,
            subject_template="⏰ Data Sync Delay Warning",
            message_template=(
                "Financial data for {organization_name} hasn't been updated for "
                "{value:.0f} hours."
            ),
        ),
    ])
