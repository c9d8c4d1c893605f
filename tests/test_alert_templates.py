"""Tests for alert message rendering."""

import math

from cashguard.alerting.templates import format_days, format_money, render_alert


def _values(**overrides):
    values = {
        "current_cash_balance": 4_000.0,
        "monthly_burn_rate": 5_000.0,
        "runway_days": 24.0,
    }
    values.update(overrides)
    return values


def test_critical_runway_subject(rules):
    message = render_alert(rules.get("critical-cash-runway"), _values(), "Acme Corp")
    assert message.subject == "🚨 Critical: Acme Corp has 24 days of cash remaining"


def test_runway_body_has_financial_status(rules):
    body = render_alert(rules.get("critical-cash-runway"), _values(), "Acme Corp").body
    assert "Current Financial Status" in body
    assert "$4,000" in body
    assert "$5,000" in body
    assert "Recommended Actions" in body


def test_runway_days_rounded_down(rules):
    message = render_alert(rules.get("low-cash-runway"), _values(runway_days=24.9), "Acme Corp")
    assert "has 24 days" in message.subject


def test_organization_name_escaped_in_body(rules):
    message = render_alert(rules.get("critical-cash-runway"), _values(), "<Acme & Sons>")
    assert "&lt;Acme &amp; Sons&gt;" in message.body
    assert "<Acme & Sons>" not in message.body
    assert "<Acme & Sons>" in message.subject


def test_metric_rule_rendering(rules):
    message = render_alert(
        rules.get("high-churn-rate"), _values(churn_rate_pct=7.5), "Acme Corp"
    )
    assert message.subject == "🚪 High Churn Alert: 7.5% churn rate"
    assert "Current value:</strong> 7.5" in message.body
    assert "Threshold:</strong> 5" in message.body
    assert "Current Financial Status" not in message.body


def test_unlimited_runway_renders(rules):
    message = render_alert(
        rules.get("high-churn-rate"),
        _values(runway_days=None, monthly_burn_rate=0.0, churn_rate_pct=9.0),
        "Acme Corp",
    )
    assert "9.0%" in message.subject

def test_missing_runway_renders_unknown(rules):
    message = render_alert(rules.get("critical-cash-runway"), {}, "Acme Corp")
    assert message.subject == "🚨 Critical: Acme Corp has unknown days of cash remaining"
    assert "unlimited" not in message.body



def test_format_days():
    assert format_days(24.9) == "24"
    assert format_days(0.0) == "0"
    assert format_days(None) == "unlimited"
    assert format_days(math.inf) == "unlimited"


def test_format_money():
    assert format_money(1234567.4) == "$1,234,567"
    assert format_money(-1_500) == "-$1,500"
    assert format_money(None) == "—"
