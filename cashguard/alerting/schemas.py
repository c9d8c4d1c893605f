"""
Alerting Schemas.

Snapshot input, alert state, alert events, delivery outcomes and the
results returned by the evaluate and retry-sweep operations.
"""

import math
import uuid
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from cashguard.exceptions import SnapshotValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round trip)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ── Enums ──────────────────────────────────────────────────────────────


class AlertSeverity(StrEnum):
    WARNING = "warning"
    CRITICAL = "critical"


class RuleCategory(StrEnum):
    FINANCIAL = "financial"
    CUSTOMER = "customer"
    SYSTEM = "system"


class RuleOperator(StrEnum):
    GT = "gt"           # greater than
    GTE = "gte"         # greater than or equal
    LT = "lt"           # less than
    LTE = "lte"         # less than or equal
    EQ = "eq"           # equal
    NEQ = "neq"         # not equal


class DeliveryStatus(StrEnum):
    DELIVERED = "delivered"
    FAILED = "failed"


class FailureKind(StrEnum):
    DELIVERY = "delivery"
    STORAGE = "storage"


# ── Snapshot ───────────────────────────────────────────────────────────


SNAPSHOT_METRIC_FIELDS = (
    "current_cash_balance",
    "monthly_burn_rate",
    "runway_days",
    "mrr_growth_pct",
    "churn_rate_pct",
    "payment_failure_rate_pct",
    "cancellation_increase_pct",
    "hours_since_last_sync",
)


class MetricsSnapshot(BaseModel):
    """
    Financial figures for one organization at one point in time.

    Produced upstream (metrics provider or API caller). Balance and burn
    may be zero or negative; every supplied number must be finite.
    """
    model_config = ConfigDict(frozen=True)

    organization_id: str = Field(min_length=1)
    current_cash_balance: float
    monthly_burn_rate: float
    runway_days: Optional[float] = None
    snapshot_at: datetime = Field(default_factory=utcnow)

    # Optional metrics for the non-runway triggers
    mrr_growth_pct: Optional[float] = None
    churn_rate_pct: Optional[float] = None
    payment_failure_rate_pct: Optional[float] = None
    cancellation_increase_pct: Optional[float] = None
    hours_since_last_sync: Optional[float] = None

    @field_validator(*SNAPSHOT_METRIC_FIELDS)
    @classmethod
    def validate_finite(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and not math.isfinite(v):
            raise ValueError("must be a finite number")
        return v

    @field_validator("snapshot_at")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)


def parse_snapshot(organization_id: str, data: dict[str, Any]) -> MetricsSnapshot:
    """Build a snapshot from raw caller data, raising SnapshotValidationError."""
    payload = {**data, "organization_id": organization_id}
    try:
        return MetricsSnapshot.model_validate(payload)
    except ValidationError as exc:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        raise SnapshotValidationError("Invalid metrics snapshot", details={"errors": errors}) from exc


# ── Delivery ───────────────────────────────────────────────────────────


class DeliveryOutcome(BaseModel):
    """Result of a single NotificationChannel.send call."""
    model_config = ConfigDict(frozen=True)

    status: DeliveryStatus
    detail: str = ""

    @classmethod
    def delivered(cls, detail: str = "") -> "DeliveryOutcome":
        return cls(status=DeliveryStatus.DELIVERED, detail=detail)

    @classmethod
    def failed(cls, reason: str) -> "DeliveryOutcome":
        return cls(status=DeliveryStatus.FAILED, detail=reason)

    @property
    def ok(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


class AlertMessage(BaseModel):
    subject: str
    body: str


class Audience(BaseModel):
    """Who receives an organization's alerts (resolved caller-side)."""
    organization_name: str
    recipients: list[str] = Field(default_factory=list)


# ── State & Events ─────────────────────────────────────────────────────


class AlertState(BaseModel):
    """
    Per (organization, condition) alert state.

    active=True means the condition was alerted and has not resolved yet.
    dispatch_attempts counts deliveries tried for the current activation.
    """
    organization_id: str
    condition_id: str
    active: bool = False
    last_triggered_at: Optional[datetime] = None
    last_resolved_at: Optional[datetime] = None
    dispatch_attempts: int = 0


class AlertEvent(BaseModel):
    """
    Write-once record of one dispatch attempt.
    """
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:16]}")
    organization_id: str
    condition_id: str
    severity: AlertSeverity
    snapshot_values: dict[str, Optional[float]] = Field(default_factory=dict)
    triggered_at: datetime          # activation this attempt belongs to
    dispatched_at: datetime
    status: DeliveryStatus
    detail: str = ""
    recipients: list[str] = Field(default_factory=list)
    attempt: int = 1


# ── Results ────────────────────────────────────────────────────────────


class DispatchFailure(BaseModel):
    condition_id: str
    kind: FailureKind
    reason: str
    retryable: bool = True


class EvaluationResult(BaseModel):
    newly_triggered: list[str] = Field(default_factory=list)
    newly_resolved: list[str] = Field(default_factory=list)
    still_active: list[str] = Field(default_factory=list)
    failures: list[DispatchFailure] = Field(default_factory=list)


class RetrySweepResult(BaseModel):
    retried: list[str] = Field(default_factory=list)
    delivered: list[str] = Field(default_factory=list)
    failures: list[DispatchFailure] = Field(default_factory=list)
