"""
CashGuard SQLAlchemy Models.

Uses compatibility types for SQLite (dev) + PostgreSQL (prod).
Organization ids are the tenant's external string ids.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cashguard.alerting.schemas import utcnow
from cashguard.db.compat import GUID, JSONType, UTCDateTime
from cashguard.db.engine import Base


def _genuuid():
    return uuid.uuid4()


# ──────────────────────────────────────────────────────────────────────────────
# Tenants
# ──────────────────────────────────────────────────────────────────────────────


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    members: Mapped[list["OrganizationMember"]] = relationship(
        back_populates="organization", cascade="all, delete-orphan"
    )


class OrganizationMember(Base):
    __tablename__ = "organization_members"
    __table_args__ = (
        UniqueConstraint("organization_id", "email", name="uq_member_org_email"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    organization_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("organizations.id"), nullable=False, index=True
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(50), default="member", nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    organization: Mapped["Organization"] = relationship(back_populates="members")


# ──────────────────────────────────────────────────────────────────────────────
# Financial metrics (written upstream, read-only here)
# ──────────────────────────────────────────────────────────────────────────────


class FinancialMetric(Base):
    """One computed metrics snapshot for an organization."""

    __tablename__ = "financial_metrics"
    __table_args__ = (
        Index("ix_financial_metrics_org_recorded", "organization_id", "recorded_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    current_cash_balance: Mapped[float] = mapped_column(Float, nullable=False)
    monthly_burn_rate: Mapped[float] = mapped_column(Float, nullable=False)
    runway_days: Mapped[Optional[float]] = mapped_column(Float)
    mrr_growth_pct: Mapped[Optional[float]] = mapped_column(Float)
    churn_rate_pct: Mapped[Optional[float]] = mapped_column(Float)
    payment_failure_rate_pct: Mapped[Optional[float]] = mapped_column(Float)
    cancellation_increase_pct: Mapped[Optional[float]] = mapped_column(Float)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


# ──────────────────────────────────────────────────────────────────────────────
# Triggers & alerts
# ──────────────────────────────────────────────────────────────────────────────


class TriggerSetting(Base):
    """Per-organization enable/disable switch for a condition."""

    __tablename__ = "trigger_settings"
    __table_args__ = (
        UniqueConstraint("organization_id", "condition_id", name="uq_trigger_setting_org_condition"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    condition_id: Mapped[str] = mapped_column(String(100), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow)


class AlertStateModel(Base):
    """
    One row per (organization, condition). Transitions are conditional
    UPDATEs on `active`, never read-modify-write.
    """

    __tablename__ = "alert_states"
    __table_args__ = (
        UniqueConstraint("organization_id", "condition_id", name="uq_alert_state_org_condition"),
        Index("ix_alert_states_org_active", "organization_id", "active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    condition_id: Mapped[str] = mapped_column(String(100), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    last_resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    dispatch_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class AlertEventModel(Base):
    """Append-only: NO UPDATE, NO DELETE."""

    __tablename__ = "alert_events"
    __table_args__ = (
        Index("ix_alert_events_org_condition", "organization_id", "condition_id", "triggered_at"),
        Index("ix_alert_events_org_dispatched", "organization_id", "dispatched_at"),
    )

    event_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    condition_id: Mapped[str] = mapped_column(String(100), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    snapshot_values: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    triggered_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    dispatched_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    detail: Mapped[str] = mapped_column(Text, default="", nullable=False)
    recipients: Mapped[list] = mapped_column(JSONType(), nullable=False, default=list)
    attempt: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
