"""Tests for the background evaluation scan and retry sweep."""

import pytest
import pytest_asyncio

from cashguard.db.models import FinancialMetric
from cashguard.db.repositories.alert_state import SqlAlchemyAlertStateStore
from cashguard.db.repositories.metrics import SqlMetricsProvider
from cashguard.exceptions import StorageError
from cashguard.services.scheduler import AlertScheduler


class BrokenForOrg(SqlMetricsProvider):
    def __init__(self, session_factory, clock, broken: str):
        super().__init__(session_factory, clock=clock)
        self.broken = broken

    async def latest_snapshot(self, organization_id):
        if organization_id == self.broken:
            raise StorageError("Metrics lookup failed")
        return await super().latest_snapshot(organization_id)


@pytest_asyncio.fixture
async def stored_metrics(db, clock):
    db.add_all([
        FinancialMetric(
            organization_id="org1",
            current_cash_balance=4_000,
            monthly_burn_rate=5_000,
            recorded_at=clock.now,
        ),
        FinancialMetric(
            organization_id="org2",
            current_cash_balance=2_000,
            monthly_burn_rate=5_000,
            recorded_at=clock.now,
        ),
    ])
    await db.commit()


def _scheduler(make_service, sql_sessions, metrics) -> AlertScheduler:
    store = SqlAlchemyAlertStateStore(sql_sessions)
    service = make_service(store=store, events=store, metrics=metrics)
    return AlertScheduler(sql_sessions, service, store, metrics, evaluation_minutes=15, retry_minutes=5)


@pytest.mark.asyncio
async def test_evaluation_scan_covers_every_organization(
    make_service, sql_sessions, clock, channel, stored_metrics
):
    scheduler = _scheduler(make_service, sql_sessions, SqlMetricsProvider(sql_sessions, clock=clock))

    first = await scheduler.run_evaluation_scan()
    assert first == {"organizations": 2, "newly_triggered": 4, "failed": 0}
    assert len(channel.sent) == 4

    second = await scheduler.run_evaluation_scan()
    assert second["newly_triggered"] == 0
    assert len(channel.sent) == 4


@pytest.mark.asyncio
async def test_evaluation_scan_isolates_failing_organization(
    make_service, sql_sessions, clock, channel, stored_metrics
):
    metrics = BrokenForOrg(sql_sessions, clock, broken="org1")
    scheduler = _scheduler(make_service, sql_sessions, metrics)

    result = await scheduler.run_evaluation_scan()
    assert result == {"organizations": 2, "newly_triggered": 2, "failed": 1}
    assert all("has 12 days" in s["subject"] for s in channel.sent)


@pytest.mark.asyncio
async def test_retry_sweep_redelivers_failed_alerts(
    make_service, sql_sessions, clock, channel, stored_metrics
):
    scheduler = _scheduler(make_service, sql_sessions, SqlMetricsProvider(sql_sessions, clock=clock))

    channel.fail_with = "timeout"
    await scheduler.run_evaluation_scan()
    channel.fail_with = None

    result = await scheduler.run_retry_sweep()
    assert result == {"organizations": 2, "retried": 4, "delivered": 4, "failed": 0}

    again = await scheduler.run_retry_sweep()
    assert again["retried"] == 0
    assert len(channel.sent) == 8


@pytest.mark.asyncio
async def test_start_registers_jobs(make_service, sql_sessions, clock):
    scheduler = _scheduler(make_service, sql_sessions, SqlMetricsProvider(sql_sessions, clock=clock))
    scheduler.start()
    try:
        assert {job.id for job in scheduler.scheduler.get_jobs()} == {"evaluation_scan", "retry_sweep"}
        assert scheduler.scheduler.running
    finally:
        scheduler.stop()
