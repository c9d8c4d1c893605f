"""
Test fixtures for CashGuard.

Provides:
- In-memory alert store + recording notification channel
- Frozen clock and static recipient resolver
- File-backed SQLite engine per test (real concurrent connections)
- Snapshot factory
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

# Configure before importing the package (settings are read at import)
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("ALERT_CHANNEL", "log")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./cashguard-test.db")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cashguard.alerting.rules import default_rule_set
from cashguard.alerting.schemas import Audience, DeliveryOutcome, MetricsSnapshot
from cashguard.alerting.service import TriggerEvaluationService
from cashguard.alerting.state_store import InMemoryAlertStateStore
from cashguard.config import Settings
from cashguard.db import models  # noqa: F401 — register all models
from cashguard.db.engine import Base, engine_options

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class RecordingChannel:
    """NotificationChannel double: records every send, fails on demand."""

    def __init__(self):
        self.sent: list[dict] = []
        self.fail_with: Optional[str] = None
        self.delay: float = 0.0

    async def send(self, recipients: list[str], subject: str, body: str) -> DeliveryOutcome:
        self.sent.append({"recipients": list(recipients), "subject": subject, "body": body})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with:
            return DeliveryOutcome.failed(self.fail_with)
        return DeliveryOutcome.delivered("ok")


class StaticRecipients:
    def __init__(self, name: str = "Acme Corp", recipients: Optional[list[str]] = None):
        self.audience = Audience(
            organization_name=name,
            recipients=["cfo@acme.test"] if recipients is None else recipients,
        )
        self.calls = 0

    async def resolve(self, organization_id: str) -> Audience:
        self.calls += 1
        return self.audience


class FrozenClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


# ── Core fixtures ────────────────────────────────────────────────────────


@pytest.fixture
def test_settings() -> Settings:
    return Settings()


@pytest.fixture
def rules(test_settings):
    return default_rule_set(test_settings)


@pytest.fixture
def store() -> InMemoryAlertStateStore:
    return InMemoryAlertStateStore()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def recipients() -> StaticRecipients:
    return StaticRecipients()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def make_service(rules, store, channel, recipients, clock):
    """Factory: TriggerEvaluationService over the in-memory store."""

    def _make(**overrides) -> TriggerEvaluationService:
        kwargs = dict(
            rules=rules,
            store=store,
            events=store,
            channel=channel,
            recipients=recipients,
            clock=clock,
            retry_grace_seconds=300,
        )
        kwargs.update(overrides)
        return TriggerEvaluationService(**kwargs)

    return _make


@pytest.fixture
def service(make_service) -> TriggerEvaluationService:
    return make_service()


@pytest.fixture
def snapshot():
    """Factory: MetricsSnapshot from balance and monthly burn."""

    def _make(balance: float, burn: float, org: str = "org1", **extra) -> MetricsSnapshot:
        return MetricsSnapshot(
            organization_id=org,
            current_cash_balance=balance,
            monthly_burn_rate=burn,
            snapshot_at=T0,
            **extra,
        )

    return _make


# ── SQL fixtures ─────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def sql_engine(tmp_path):
    """File-backed SQLite so concurrent sessions use separate connections."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'cashguard.db'}"
    eng = create_async_engine(url, **engine_options(url))
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def sql_sessions(sql_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(sql_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(sql_sessions) -> AsyncGenerator[AsyncSession, None]:
    async with sql_sessions() as session:
        yield session
