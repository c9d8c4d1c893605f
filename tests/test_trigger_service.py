"""
Tests for TriggerEvaluationService.evaluate.

Covers:
- End-to-end org1 scenario (60 → 24 → 24 → 120 runway days)
- No duplicate alert for an already-active condition
- Exactly one dispatch under N concurrent evaluations
- Silent resolution
- Delivery and storage failures reported per condition
- Validation before any mutation
- On-demand alert email outside the activation lifecycle
"""

import asyncio
import math

import pytest

from cashguard.alerting.schemas import DeliveryStatus, FailureKind
from cashguard.alerting.rules import RuleSet
from cashguard.alerting.state_store import InMemoryAlertStateStore
from cashguard.exceptions import (
    SnapshotValidationError,
    StorageError,
    StorageUnavailableError,
    UnknownConditionError,
)

CRITICAL = "critical-cash-runway"
LOW = "low-cash-runway"


class FlakyStore(InMemoryAlertStateStore):
    """In-memory store whose reads fail for chosen conditions."""

    def __init__(self, failing: set[str], fail_appends: bool = False):
        super().__init__()
        self.failing = failing
        self.fail_appends = fail_appends

    async def get(self, organization_id, condition_id):
        if condition_id in self.failing:
            raise StorageError("connection reset")
        return await super().get(organization_id, condition_id)

    async def append(self, event):
        if self.fail_appends:
            raise StorageError("disk full")
        await super().append(event)


@pytest.fixture
def critical_only(make_service, rules):
    return make_service(rules=rules.select([CRITICAL]))


# ── End-to-end ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_org1_runway_scenario(critical_only, store, channel, snapshot):
    # 60 days: not critical
    result = await critical_only.evaluate("org1", snapshot(10_000, 5_000))
    assert result.newly_triggered == []
    assert channel.sent == []

    # 24 days: critical fires once
    result = await critical_only.evaluate("org1", snapshot(4_000, 5_000))
    assert result.newly_triggered == [CRITICAL]
    assert len(channel.sent) == 1
    assert (await store.get("org1", CRITICAL)).active is True

    # Still 24 days: no second alert
    result = await critical_only.evaluate("org1", snapshot(4_000, 5_000))
    assert result.still_active == [CRITICAL]
    assert result.newly_triggered == []
    assert len(channel.sent) == 1

    # 120 days: resolved silently
    result = await critical_only.evaluate("org1", snapshot(20_000, 5_000))
    assert result.newly_resolved == [CRITICAL]
    assert len(channel.sent) == 1
    assert (await store.get("org1", CRITICAL)).active is False


@pytest.mark.asyncio
async def test_alert_message_and_event(critical_only, store, channel, snapshot):
    await critical_only.evaluate("org1", snapshot(4_000, 5_000))

    sent = channel.sent[0]
    assert sent["recipients"] == ["cfo@acme.test"]
    assert "Acme Corp" in sent["subject"]
    assert "24 days" in sent["subject"]

    event = await store.latest("org1", CRITICAL)
    assert event.status == DeliveryStatus.DELIVERED
    assert event.attempt == 1
    assert event.snapshot_values["runway_days"] == pytest.approx(24.0)
    assert event.triggered_at == (await store.get("org1", CRITICAL)).last_triggered_at


# ── Dedup & concurrency ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_active_condition_is_not_realerted(service, channel, snapshot):
    await service.evaluate("org1", snapshot(4_000, 5_000))
    sends = len(channel.sent)

    results = await asyncio.gather(
        service.evaluate("org1", snapshot(3_000, 5_000)),
        service.evaluate("org1", snapshot(2_000, 5_000)),
    )
    assert len(channel.sent) == sends
    for result in results:
        assert result.newly_triggered == []
        assert result.still_active == [CRITICAL, LOW]


@pytest.mark.asyncio
async def test_concurrent_evaluations_dispatch_exactly_once(critical_only, channel, snapshot):
    channel.delay = 0.01
    results = await asyncio.gather(*(
        critical_only.evaluate("org1", snapshot(4_000, 5_000)) for _ in range(10)
    ))

    assert len(channel.sent) == 1
    assert sum(len(r.newly_triggered) for r in results) == 1
    assert sum(len(r.still_active) for r in results) == 9


@pytest.mark.asyncio
async def test_organizations_are_isolated(service, store, channel, snapshot):
    await service.evaluate("org1", snapshot(4_000, 5_000, org="org1"))
    result = await service.evaluate("org2", snapshot(4_000, 5_000, org="org2"))

    assert result.newly_triggered == [CRITICAL, LOW]
    assert len(channel.sent) == 4
    assert [s.condition_id for s in await store.list_active("org2")] == [CRITICAL, LOW]


# ── Resolution ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_resolution_is_silent(service, store, channel, clock, snapshot):
    await service.evaluate("org1", snapshot(4_000, 5_000))
    sends = len(channel.sent)

    clock.advance(3600)
    result = await service.evaluate("org1", snapshot(10_000, 5_000))  # 60 days

    assert result.newly_resolved == [CRITICAL]
    assert result.still_active == [LOW]
    assert len(channel.sent) == sends
    state = await store.get("org1", CRITICAL)
    assert state.active is False
    assert state.last_resolved_at == clock.now


@pytest.mark.asyncio
async def test_unselected_conditions_are_left_alone(service, store, snapshot):
    await service.evaluate("org1", snapshot(4_000, 5_000))

    result = await service.evaluate("org1", snapshot(20_000, 5_000), [CRITICAL])
    assert result.newly_resolved == [CRITICAL]
    assert (await store.get("org1", LOW)).active is True


# ── Failures ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_delivery_failure_is_recorded_not_raised(service, store, channel, snapshot):
    channel.fail_with = "SMTP 421"
    result = await service.evaluate("org1", snapshot(4_000, 5_000))

    assert result.newly_triggered == [CRITICAL, LOW]
    assert {f.condition_id for f in result.failures} == {CRITICAL, LOW}
    assert all(f.kind == FailureKind.DELIVERY and f.reason == "SMTP 421" for f in result.failures)

    state = await store.get("org1", CRITICAL)
    assert state.active is True
    event = await store.latest("org1", CRITICAL)
    assert event.status == DeliveryStatus.FAILED
    assert event.detail == "SMTP 421"


@pytest.mark.asyncio
async def test_channel_exception_is_downgraded(service, channel, snapshot):
    async def boom(recipients, subject, body):
        raise ConnectionError("provider unreachable")

    channel.send = boom
    result = await service.evaluate("org1", snapshot(4_000, 5_000))
    assert result.newly_triggered == [CRITICAL, LOW]
    assert all(f.reason == "provider unreachable" for f in result.failures)


@pytest.mark.asyncio
async def test_no_recipients_is_a_failed_delivery(make_service, store, channel, snapshot):
    from cashguard.alerting.schemas import Audience

    class Nobody:
        async def resolve(self, organization_id):
            return Audience(organization_name="Ghost Inc")

    service = make_service(recipients=Nobody())
    result = await service.evaluate("org1", snapshot(4_000, 5_000))

    assert channel.sent == []
    assert {f.reason for f in result.failures} == {"No recipients"}
    assert (await store.latest("org1", CRITICAL)).status == DeliveryStatus.FAILED


@pytest.mark.asyncio
async def test_recipients_resolved_once_per_evaluation(service, recipients, snapshot):
    await service.evaluate("org1", snapshot(4_000, 5_000))
    assert recipients.calls == 1


@pytest.mark.asyncio
async def test_storage_failure_is_per_condition(make_service, channel, snapshot):
    flaky = FlakyStore(failing={LOW})
    service = make_service(store=flaky, events=flaky)

    result = await service.evaluate("org1", snapshot(4_000, 5_000))

    assert result.newly_triggered == [CRITICAL]
    assert len(result.failures) == 1
    failure = result.failures[0]
    assert failure.condition_id == LOW
    assert failure.kind == FailureKind.STORAGE
    assert failure.retryable is True
    assert len(channel.sent) == 1


@pytest.mark.asyncio
async def test_total_storage_failure_raises(make_service, rules, snapshot):
    flaky = FlakyStore(failing=set(rules.condition_ids))
    service = make_service(store=flaky, events=flaky)

    with pytest.raises(StorageUnavailableError) as exc:
        await service.evaluate("org1", snapshot(4_000, 5_000))
    assert exc.value.retryable is True


@pytest.mark.asyncio
async def test_event_record_failure_keeps_trigger(make_service, channel, snapshot):
    flaky = FlakyStore(failing=set(), fail_appends=True)
    service = make_service(store=flaky, events=flaky)

    result = await service.evaluate("org1", snapshot(4_000, 5_000))
    assert result.newly_triggered == [CRITICAL, LOW]
    assert {f.kind for f in result.failures} == {FailureKind.STORAGE}
    assert len(channel.sent) == 2


# ── Validation ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_unknown_condition_rejected_before_mutation(service, store, channel, snapshot):
    with pytest.raises(UnknownConditionError):
        await service.evaluate("org1", snapshot(4_000, 5_000), [CRITICAL, "revenue-milestone"])
    assert await store.list_active("org1") == []
    assert channel.sent == []


@pytest.mark.asyncio
async def test_snapshot_for_other_org_rejected(service, store, snapshot):
    with pytest.raises(SnapshotValidationError):
        await service.evaluate("org1", snapshot(4_000, 5_000, org="org2"))
    assert await store.list_active("org1") == []
    assert await store.list_active("org2") == []


@pytest.mark.asyncio
async def test_empty_rule_set_is_noop(make_service, channel, snapshot):
    service = make_service(rules=RuleSet())
    result = await service.evaluate("org1", snapshot(0, 5_000))
    assert result.model_dump() == {
        "newly_triggered": [],
        "newly_resolved": [],
        "still_active": [],
        "failures": [],
    }
    assert channel.sent == []


@pytest.mark.asyncio
async def test_empty_selection_is_noop(service, channel, snapshot):
    result = await service.evaluate("org1", snapshot(0, 5_000), [])
    assert result.newly_triggered == []
    assert channel.sent == []


@pytest.mark.asyncio
async def test_unlimited_runway_recorded_as_null(make_service, rules, store, snapshot):
    service = make_service(rules=rules.select(["high-churn-rate"]))
    await service.evaluate("org1", snapshot(10_000, 0, churn_rate_pct=9))

    event = await store.latest("org1", "high-churn-rate")
    assert event.snapshot_values["runway_days"] is None
    assert not any(
        isinstance(v, float) and math.isinf(v) for v in event.snapshot_values.values()
    )


@pytest.mark.asyncio
async def test_send_alert_email_leaves_state_alone(service, store, channel, snapshot):
    outcome = await service.send_alert_email("org1", CRITICAL, "board@acme.test", snapshot(4_000, 5_000))

    assert outcome.status == DeliveryStatus.DELIVERED
    assert channel.sent[0]["recipients"] == ["board@acme.test"]
    assert "Acme Corp has 24 days" in channel.sent[0]["subject"]
    assert (await store.get("org1", CRITICAL)).active is False
    assert await store.latest("org1", CRITICAL) is None


@pytest.mark.asyncio
async def test_send_alert_email_unknown_condition(service, channel, snapshot):
    with pytest.raises(UnknownConditionError):
        await service.send_alert_email("org1", "revenue-milestone", "board@acme.test", snapshot(4_000, 5_000))
    assert channel.sent == []
