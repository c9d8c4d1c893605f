"""
FastAPI dependencies for the trigger API.

Everything the routes need is resolved here so tests can swap pieces via
app.dependency_overrides (session factory, channel, clock).
"""

from functools import lru_cache
from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cashguard.alerting.channels import NotificationChannel, build_notification_channel
from cashguard.alerting.rules import RuleSet, default_rule_set
from cashguard.alerting.schemas import utcnow
from cashguard.alerting.service import Clock, TriggerEvaluationService
from cashguard.config import settings
from cashguard.db.engine import get_session_factory
from cashguard.db.repositories.alert_state import SqlAlchemyAlertStateStore
from cashguard.db.repositories.metrics import SqlMetricsProvider
from cashguard.db.repositories.organization import SqlRecipientResolver


def get_sessions() -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


async def get_db(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
) -> AsyncGenerator[AsyncSession, None]:
    """Provide an async DB session, committed when the request succeeds."""
    async with sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@lru_cache
def get_rule_set() -> RuleSet:
    return default_rule_set(settings)


@lru_cache
def get_notification_channel() -> NotificationChannel:
    return build_notification_channel(settings)


def get_clock() -> Clock:
    return utcnow


def get_metrics_provider(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
    clock: Clock = Depends(get_clock),
) -> SqlMetricsProvider:
    return SqlMetricsProvider(sessions, clock=clock)


def get_alert_store(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
) -> SqlAlchemyAlertStateStore:
    return SqlAlchemyAlertStateStore(sessions)


def get_trigger_service(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
    rules: RuleSet = Depends(get_rule_set),
    store: SqlAlchemyAlertStateStore = Depends(get_alert_store),
    channel: NotificationChannel = Depends(get_notification_channel),
    metrics: SqlMetricsProvider = Depends(get_metrics_provider),
    clock: Clock = Depends(get_clock),
) -> TriggerEvaluationService:
    return TriggerEvaluationService(
        rules=rules,
        store=store,
        events=store,
        channel=channel,
        recipients=SqlRecipientResolver(sessions, roles=settings.alert_recipient_roles),
        metrics=metrics,
        clock=clock,
        retry_grace_seconds=settings.retry_grace_seconds,
    )
