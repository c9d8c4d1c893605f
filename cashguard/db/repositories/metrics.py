"""Latest stored metrics snapshot per organization."""

from typing import Callable, Optional

from sqlalchemy import distinct, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cashguard.alerting.schemas import MetricsSnapshot, utcnow
from cashguard.db.models import FinancialMetric
from cashguard.exceptions import StorageError


class SqlMetricsProvider:
    """
    Reads the newest `financial_metrics` row for an organization.

    hours_since_last_sync is derived from that row's recorded_at, so a
    stale upload shows up as a data-sync delay.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def latest_snapshot(self, organization_id: str) -> Optional[MetricsSnapshot]:
        try:
            async with self._session_factory() as session:
                row = (await session.execute(
                    select(FinancialMetric)
                    .where(FinancialMetric.organization_id == organization_id)
                    .order_by(FinancialMetric.recorded_at.desc())
                    .limit(1)
                )).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(
                "Metrics lookup failed",
                details={"organization_id": organization_id, "error": type(e).__name__},
            ) from e

        if row is None:
            return None

        age_hours = max((self._clock() - row.recorded_at).total_seconds() / 3600, 0.0)
        return MetricsSnapshot(
            organization_id=organization_id,
            current_cash_balance=row.current_cash_balance,
            monthly_burn_rate=row.monthly_burn_rate,
            runway_days=row.runway_days,
            snapshot_at=row.recorded_at,
            mrr_growth_pct=row.mrr_growth_pct,
            churn_rate_pct=row.churn_rate_pct,
            payment_failure_rate_pct=row.payment_failure_rate_pct,
            cancellation_increase_pct=row.cancellation_increase_pct,
            hours_since_last_sync=age_hours,
        )

    async def organization_ids(self) -> list[str]:
        """Every organization with at least one stored snapshot."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(distinct(FinancialMetric.organization_id))
                    .order_by(FinancialMetric.organization_id)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageError("Metrics lookup failed", details={"error": type(e).__name__}) from e
