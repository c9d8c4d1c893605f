"""
Tests for InMemoryAlertStateStore.

Covers:
- Lazy creation (absent = inactive)
- Compare-and-set transitions, including under concurrency
- Redelivery claims
- Event log ordering and tenant isolation
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from cashguard.alerting.schemas import AlertEvent, AlertSeverity, DeliveryStatus

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
COND = "critical-cash-runway"


def _event(org="org1", cond=COND, status=DeliveryStatus.FAILED, attempt=1, at=T0):
    return AlertEvent(
        organization_id=org,
        condition_id=cond,
        severity=AlertSeverity.CRITICAL,
        triggered_at=at,
        dispatched_at=at,
        status=status,
        attempt=attempt,
    )


@pytest.mark.asyncio
async def test_absent_state_reads_inactive(store):
    state = await store.get("org1", COND)
    assert state.active is False
    assert state.last_triggered_at is None
    assert state.last_resolved_at is None


@pytest.mark.asyncio
async def test_transition_to_active_applies_once(store):
    assert await store.transition_to_active("org1", COND, T0) is True
    assert await store.transition_to_active("org1", COND, T0 + timedelta(minutes=1)) is False

    state = await store.get("org1", COND)
    assert state.active is True
    assert state.last_triggered_at == T0
    assert state.dispatch_attempts == 1


@pytest.mark.asyncio
async def test_transition_to_resolved_requires_active(store):
    assert await store.transition_to_resolved("org1", COND, T0) is False

    await store.transition_to_active("org1", COND, T0)
    resolved_at = T0 + timedelta(hours=1)
    assert await store.transition_to_resolved("org1", COND, resolved_at) is True
    assert await store.transition_to_resolved("org1", COND, resolved_at) is False

    state = await store.get("org1", COND)
    assert state.active is False
    assert state.last_triggered_at == T0
    assert state.last_resolved_at == resolved_at


@pytest.mark.asyncio
async def test_concurrent_activation_has_one_winner(store):
    results = await asyncio.gather(*(
        store.transition_to_active("org1", COND, T0) for _ in range(25)
    ))
    assert results.count(True) == 1


@pytest.mark.asyncio
async def test_reactivation_resets_attempts(store):
    await store.transition_to_active("org1", COND, T0)
    await store.claim_redelivery("org1", COND, 1, T0)
    await store.transition_to_resolved("org1", COND, T0)
    await store.transition_to_active("org1", COND, T0 + timedelta(days=1))
    assert (await store.get("org1", COND)).dispatch_attempts == 1


@pytest.mark.asyncio
async def test_claim_redelivery(store):
    assert await store.claim_redelivery("org1", COND, 0, None) is False  # never activated

    await store.transition_to_active("org1", COND, T0)
    assert await store.claim_redelivery("org1", COND, 1, T0) is True
    assert await store.claim_redelivery("org1", COND, 1, T0) is False  # stale read
    assert (await store.get("org1", COND)).dispatch_attempts == 2

    await store.transition_to_resolved("org1", COND, T0)
    assert await store.claim_redelivery("org1", COND, 2, T0) is False


@pytest.mark.asyncio
async def test_claim_rejected_after_reactivation(store):
    await store.transition_to_active("org1", COND, T0)
    seen = await store.get("org1", COND)

    later = T0 + timedelta(minutes=5)
    await store.transition_to_resolved("org1", COND, later)
    await store.transition_to_active("org1", COND, later)

    # Same attempt count, different activation
    assert await store.claim_redelivery("org1", COND, seen.dispatch_attempts, seen.last_triggered_at) is False
    assert await store.claim_redelivery("org1", COND, 1, later) is True


@pytest.mark.asyncio
async def test_list_active_is_per_organization(store):
    await store.transition_to_active("org1", COND, T0)
    await store.transition_to_active("org1", "low-cash-runway", T0)
    await store.transition_to_active("org2", COND, T0)
    await store.transition_to_resolved("org1", "low-cash-runway", T0)

    active = await store.list_active("org1")
    assert [(s.organization_id, s.condition_id) for s in active] == [("org1", COND)]


@pytest.mark.asyncio
async def test_event_log(store):
    first = _event(attempt=1)
    second = _event(attempt=2, status=DeliveryStatus.DELIVERED)
    other_org = _event(org="org2")
    for event in (first, second, other_org):
        await store.append(event)

    assert (await store.latest("org1", COND)).event_id == second.event_id
    assert await store.latest("org1", "low-cash-runway") is None

    events = await store.list_events("org1")
    assert [e.event_id for e in events] == [second.event_id, first.event_id]
    assert len(await store.list_events("org1", limit=1)) == 1
