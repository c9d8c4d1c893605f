"""
Alert Templates — subject and HTML body for a triggered condition.

Rendered from the snapshot values recorded at trigger time, so a
redelivery shows the same figures as the original attempt.
"""

import html
import math
from typing import Mapping, Optional

from cashguard.alerting.rules import ConditionRule
from cashguard.alerting.schemas import AlertMessage, AlertSeverity

RUNWAY_METRIC = "runway_days"

_SEVERITY_COLORS = {
    AlertSeverity.CRITICAL: ("#dc2626", "#fef2f2"),
    AlertSeverity.WARNING: ("#f59e0b", "#fffbeb"),
}

_RECOMMENDED_ACTIONS = {
    AlertSeverity.CRITICAL: (
        "Review and reduce immediate expenses",
        "Accelerate revenue collection",
        "Consider emergency funding options",
        "Update cash flow projections",
    ),
    AlertSeverity.WARNING: (
        "Review your financial strategy",
        "Explore funding options early",
    ),
}


def format_days(value: Optional[float]) -> str:
    """Whole days, rounded down. No burn means unlimited runway."""
    if value is None or math.isinf(value):
        return "unlimited"
    return str(math.floor(value))


def format_money(value: Optional[float]) -> str:
    if value is None:
        return "—"
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.0f}"


def _runway_text(values: Mapping[str, Optional[float]]) -> str:
    # A stored None is unlimited runway; an absent key means no figure was recorded
    if RUNWAY_METRIC not in values:
        return "unknown"
    return format_days(values[RUNWAY_METRIC])


def render_alert(
    rule: ConditionRule,
    values: Mapping[str, Optional[float]],
    organization_name: str,
) -> AlertMessage:
    """Build the message for one rule from recorded snapshot values."""
    value = values.get(rule.metric)
    fields = {
        "organization_name": organization_name,
        "runway_days_floor": _runway_text(values),
        "value": value if value is not None else math.nan,
        "threshold": rule.threshold,
    }
    subject = rule.subject_template.format(**fields)
    summary = rule.message_template.format(
        **{**fields, "organization_name": html.escape(organization_name)}
    )

    if rule.metric == RUNWAY_METRIC:
        status_block = _runway_status_block(values)
    else:
        status_block = _metric_block(rule, value)

    return AlertMessage(subject=subject, body=_wrap(rule, summary, status_block))


def _runway_status_block(values: Mapping[str, Optional[float]]) -> str:
    items = [
        ("Cash Runway", f"{_runway_text(values)} days"),
        ("Current Cash Balance", format_money(values.get("current_cash_balance"))),
        ("Monthly Burn Rate", format_money(values.get("monthly_burn_rate"))),
    ]
    rows = "".join(
        f'<li style="padding: 8px 0; border-bottom: 1px solid #e5e7eb;">'
        f"<strong>{label}:</strong> {text}</li>"
        for label, text in items
    )
    return (
        '<div style="background-color: #f9fafb; padding: 20px; border-radius: 8px;">'
        '<h3 style="margin-top: 0;">Current Financial Status</h3>'
        f'<ul style="list-style: none; padding: 0;">{rows}</ul>'
        "</div>"
    )


def _metric_block(rule: ConditionRule, value: Optional[float]) -> str:
    shown = f"{value:,.1f}" if value is not None else "—"
    return (
        '<div style="background-color: #f9fafb; padding: 20px; border-radius: 8px;">'
        f'<h3 style="margin-top: 0;">{html.escape(rule.label)}</h3>'
        f"<p><strong>Current value:</strong> {shown}</p>"
        f"<p><strong>Threshold:</strong> {rule.threshold:g}</p>"
        "</div>"
    )


def _wrap(rule: ConditionRule, summary: str, status_block: str) -> str:
    accent, background = _SEVERITY_COLORS.get(rule.severity, ("#6b7280", "#f3f4f6"))
    actions = "".join(f"<li>{a}</li>" for a in _RECOMMENDED_ACTIONS.get(rule.severity, ()))
    actions_block = (
        f'<div style="padding: 20px;"><h3 style="margin-top: 0;">Recommended Actions</h3>'
        f"<ul>{actions}</ul></div>"
        if rule.metric == RUNWAY_METRIC and actions
        else ""
    )
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{html.escape(rule.label)}</title></head>"
        '<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">'
        '<div style="max-width: 600px; margin: 0 auto; padding: 20px;">'
        f'<div style="background-color: {accent}; color: white; padding: 20px; border-radius: 8px;">'
        f'<h1 style="margin: 0; font-size: 24px;">{html.escape(rule.label)}</h1></div>'
        f'<div style="background-color: {background}; border-left: 4px solid {accent}; padding: 20px;">'
        f"<p>{summary}</p></div>"
        f"{status_block}"
        f"{actions_block}"
        '<p style="color: #6b7280; font-size: 14px;">'
        f"This alert was sent because: {html.escape(rule.description or rule.label)}. "
        "To modify alert settings, visit your dashboard.</p>"
        "</div></body></html>"
    )
