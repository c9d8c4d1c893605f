"""
SQL alert state store and event log.

Every transition is a single conditional UPDATE inside its own
transaction; `rowcount == 1` tells the caller whether it won. Rows are
created lazily with INSERT ... ON CONFLICT DO NOTHING so concurrent first
evaluations of a pair can't fail on the unique constraint.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cashguard.alerting.schemas import AlertEvent, AlertState
from cashguard.db.models import AlertEventModel, AlertStateModel
from cashguard.exceptions import StorageError

logger = structlog.get_logger(__name__)

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class SqlAlchemyAlertStateStore:
    """AlertStateStore + AlertEventLog over async SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.warning("alert_store_error", operation=operation, error=str(e))
            raise StorageError(
                f"Alert store {operation} failed",
                details={"operation": operation, "error": type(e).__name__},
            ) from e

    # ── AlertStateStore ──────────────────────────────────────────────

    async def get(self, organization_id: str, condition_id: str) -> AlertState:
        async with self._transaction("get") as session:
            row = (await session.execute(
                select(AlertStateModel).where(
                    AlertStateModel.organization_id == organization_id,
                    AlertStateModel.condition_id == condition_id,
                )
            )).scalar_one_or_none()
        if row is None:
            return AlertState(organization_id=organization_id, condition_id=condition_id)
        return _to_state(row)

    async def transition_to_active(
        self, organization_id: str, condition_id: str, triggered_at: datetime
    ) -> bool:
        async with self._transaction("transition_to_active") as session:
            await self._ensure_row(session, organization_id, condition_id)
            result = await session.execute(
                update(AlertStateModel)
                .where(
                    AlertStateModel.organization_id == organization_id,
                    AlertStateModel.condition_id == condition_id,
                    AlertStateModel.active.is_(False),
                )
                .values(active=True, last_triggered_at=triggered_at, dispatch_attempts=1)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def transition_to_resolved(
        self, organization_id: str, condition_id: str, resolved_at: datetime
    ) -> bool:
        async with self._transaction("transition_to_resolved") as session:
            result = await session.execute(
                update(AlertStateModel)
                .where(
                    AlertStateModel.organization_id == organization_id,
                    AlertStateModel.condition_id == condition_id,
                    AlertStateModel.active.is_(True),
                )
                .values(active=False, last_resolved_at=resolved_at)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def claim_redelivery(
        self,
        organization_id: str,
        condition_id: str,
        seen_attempts: int,
        seen_triggered_at: Optional[datetime],
    ) -> bool:
        async with self._transaction("claim_redelivery") as session:
            result = await session.execute(
                update(AlertStateModel)
                .where(
                    AlertStateModel.organization_id == organization_id,
                    AlertStateModel.condition_id == condition_id,
                    AlertStateModel.active.is_(True),
                    AlertStateModel.dispatch_attempts == seen_attempts,
                    AlertStateModel.last_triggered_at == seen_triggered_at,
                )
                .values(dispatch_attempts=seen_attempts + 1)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def list_active(self, organization_id: str) -> list[AlertState]:
        async with self._transaction("list_active") as session:
            rows = (await session.execute(
                select(AlertStateModel)
                .where(
                    AlertStateModel.organization_id == organization_id,
                    AlertStateModel.active.is_(True),
                )
                .order_by(AlertStateModel.condition_id)
            )).scalars().all()
        return [_to_state(r) for r in rows]

    async def organizations_with_active_alerts(self) -> list[str]:
        """Organization ids the retry sweep has to visit."""
        async with self._transaction("organizations_with_active_alerts") as session:
            result = await session.execute(
                select(AlertStateModel.organization_id)
                .where(AlertStateModel.active.is_(True))
                .distinct()
                .order_by(AlertStateModel.organization_id)
            )
            return list(result.scalars().all())

    async def _ensure_row(self, session: AsyncSession, organization_id: str, condition_id: str) -> None:
        dialect = session.get_bind().dialect.name
        insert = _UPSERT_INSERTS.get(dialect)
        if insert is None:
            raise StorageError(f"Unsupported database dialect: {dialect}")
        await session.execute(
            insert(AlertStateModel)
            .values(
                id=uuid.uuid4(),
                organization_id=organization_id,
                condition_id=condition_id,
                active=False,
                dispatch_attempts=0,
            )
            .on_conflict_do_nothing(index_elements=["organization_id", "condition_id"])
        )

    # ── AlertEventLog ────────────────────────────────────────────────

    async def append(self, event: AlertEvent) -> None:
        async with self._transaction("append_event") as session:
            session.add(AlertEventModel(
                event_id=event.event_id,
                organization_id=event.organization_id,
                condition_id=event.condition_id,
                severity=event.severity.value,
                snapshot_values=dict(event.snapshot_values),
                triggered_at=event.triggered_at,
                dispatched_at=event.dispatched_at,
                status=event.status.value,
                detail=event.detail,
                recipients=list(event.recipients),
                attempt=event.attempt,
            ))

    async def latest(self, organization_id: str, condition_id: str) -> Optional[AlertEvent]:
        async with self._transaction("latest_event") as session:
            row = (await session.execute(
                select(AlertEventModel)
                .where(
                    AlertEventModel.organization_id == organization_id,
                    AlertEventModel.condition_id == condition_id,
                )
                .order_by(
                    AlertEventModel.triggered_at.desc(),
                    AlertEventModel.attempt.desc(),
                    AlertEventModel.dispatched_at.desc(),
                )
                .limit(1)
            )).scalar_one_or_none()
        return _to_event(row) if row is not None else None

    async def list_events(self, organization_id: str, limit: int = 50) -> list[AlertEvent]:
        async with self._transaction("list_events") as session:
            rows = (await session.execute(
                select(AlertEventModel)
                .where(AlertEventModel.organization_id == organization_id)
                .order_by(AlertEventModel.dispatched_at.desc(), AlertEventModel.attempt.desc())
                .limit(limit)
            )).scalars().all()
        return [_to_event(r) for r in rows]


def _to_state(row: AlertStateModel) -> AlertState:
    return AlertState(
        organization_id=row.organization_id,
        condition_id=row.condition_id,
        active=row.active,
        last_triggered_at=row.last_triggered_at,
        last_resolved_at=row.last_resolved_at,
        dispatch_attempts=row.dispatch_attempts,
    )


def _to_event(row: AlertEventModel) -> AlertEvent:
    return AlertEvent(
        event_id=row.event_id,
        organization_id=row.organization_id,
        condition_id=row.condition_id,
        severity=row.severity,
        snapshot_values=row.snapshot_values or {},
        triggered_at=row.triggered_at,
        dispatched_at=row.dispatched_at,
        status=row.status,
        detail=row.detail or "",
        recipients=row.recipients or [],
        attempt=row.attempt,
    )
