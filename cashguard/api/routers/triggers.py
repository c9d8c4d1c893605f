"""
Trigger API Endpoints.

POST /api/v1/triggers/evaluate      — evaluate enabled triggers for an organization
POST /api/v1/triggers/send-alerts   — retry failed alert deliveries
POST /api/v1/triggers/send-email    — send one trigger's alert to a single address
GET  /api/v1/triggers               — trigger settings (seeded on first read)
PUT  /api/v1/triggers               — enable / disable triggers
GET  /api/v1/triggers/events        — alert event history
GET  /api/v1/triggers/states        — current alert state per condition
GET  /api/v1/triggers/health        — liveness
"""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cashguard.alerting.channels import NotificationChannel
from cashguard.alerting.rules import RuleSet
from cashguard.alerting.schemas import (
    AlertEvent,
    AlertSeverity,
    AlertState,
    DeliveryStatus,
    EvaluationResult,
    RetrySweepResult,
    RuleCategory,
    parse_snapshot,
)
from cashguard.alerting.service import TriggerEvaluationService
from cashguard.api.deps import (
    get_db,
    get_metrics_provider,
    get_notification_channel,
    get_rule_set,
    get_trigger_service,
)
from cashguard.db.repositories.metrics import SqlMetricsProvider
from cashguard.db.repositories.trigger_settings import trigger_settings_repo
from cashguard.exceptions import NotFoundError, TriggerDisabledError
from cashguard.services.resilience import CircuitBreaker, CircuitState

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/triggers", tags=["triggers"])


# ── Request / Response models ──────────────────────────────────────────


class EvaluateRequest(BaseModel):
    organization_id: str = Field(min_length=1)
    trigger_types: Optional[list[str]] = Field(
        default=None, description="Condition ids to evaluate (default: all enabled)",
    )
    data: Optional[dict[str, Any]] = Field(
        default=None, description="Metrics snapshot; the latest stored one is used when absent",
    )


class SendAlertsRequest(BaseModel):
    organization_id: str = Field(min_length=1)


class SendEmailRequest(BaseModel):
    organization_id: str = Field(min_length=1)
    condition_id: str = Field(min_length=1)
    recipient_email: EmailStr
    data: Optional[dict[str, Any]] = Field(
        default=None, description="Metrics snapshot; the latest stored one is used when absent",
    )


class SendEmailResponse(BaseModel):
    condition_id: str
    recipient_email: str
    status: DeliveryStatus
    detail: str = ""


class TriggerSettingItem(BaseModel):
    condition_id: str
    label: str
    description: str
    severity: AlertSeverity
    category: RuleCategory
    is_enabled: bool


class TriggerSettingsResponse(BaseModel):
    organization_id: str
    triggers: list[TriggerSettingItem]


class TriggerToggle(BaseModel):
    condition_id: str
    is_enabled: bool


class TriggerSettingsUpdateRequest(BaseModel):
    triggers: list[TriggerToggle]


class AlertEventListResponse(BaseModel):
    events: list[AlertEvent]
    total: int


class AlertStateListResponse(BaseModel):
    states: list[AlertState]


def _settings_response(
    organization_id: str, rules: RuleSet, enabled: dict[str, bool]
) -> TriggerSettingsResponse:
    return TriggerSettingsResponse(
        organization_id=organization_id,
        triggers=[
            TriggerSettingItem(
                condition_id=r.condition_id,
                label=r.label,
                description=r.description,
                severity=r.severity,
                category=r.category,
                is_enabled=enabled.get(r.condition_id, False),
            )
            for r in rules
        ],
    )


# ── Evaluation ─────────────────────────────────────────────────────────


@router.post("/evaluate", response_model=EvaluationResult)
async def evaluate_triggers(
    body: EvaluateRequest,
    db: AsyncSession = Depends(get_db),
    service: TriggerEvaluationService = Depends(get_trigger_service),
    metrics: SqlMetricsProvider = Depends(get_metrics_provider),
):
    """
    Evaluate the organization's enabled triggers against a snapshot.

    Only conditions that newly fired are notified; already-active ones are
    reported in still_active without a second alert.
    """
    org = body.organization_id
    if body.trigger_types is not None:
        service.rules.select(body.trigger_types)

    if body.data is not None:
        snapshot = parse_snapshot(org, body.data)
    else:
        snapshot = await metrics.latest_snapshot(org)
        if snapshot is None:
            raise NotFoundError("Metrics snapshot", org)

    enabled = await trigger_settings_repo.enabled_condition_ids(db, org, service.rules)
    # Release the settings transaction before the store opens its own.
    await db.commit()

    selected = [
        cid for cid in enabled
        if body.trigger_types is None or cid in body.trigger_types
    ]
    return await service.evaluate(org, snapshot, selected)


@router.post("/send-alerts", response_model=RetrySweepResult)
async def send_alerts(
    body: SendAlertsRequest,
    service: TriggerEvaluationService = Depends(get_trigger_service),
):
    """Redeliver alerts whose last delivery failed. Safe to call repeatedly."""
    return await service.send_alerts_for_matching_conditions(body.organization_id)


@router.post("/send-email", response_model=SendEmailResponse)
async def send_trigger_email(
    body: SendEmailRequest,
    db: AsyncSession = Depends(get_db),
    service: TriggerEvaluationService = Depends(get_trigger_service),
    metrics: SqlMetricsProvider = Depends(get_metrics_provider),
):
    """
    Send one trigger's alert to a single address on demand.

    The trigger must be enabled for the organization. Alert state and event
    history are not touched; delivery problems come back in status/detail.
    """
    org = body.organization_id
    service.rules.select([body.condition_id])

    enabled = await trigger_settings_repo.enabled_condition_ids(db, org, service.rules)
    await db.commit()
    if body.condition_id not in enabled:
        raise TriggerDisabledError(org, body.condition_id)

    if body.data is not None:
        snapshot = parse_snapshot(org, body.data)
    else:
        snapshot = await metrics.latest_snapshot(org)
        if snapshot is None:
            raise NotFoundError("Metrics snapshot", org)

    outcome = await service.send_alert_email(org, body.condition_id, body.recipient_email, snapshot)
    return SendEmailResponse(
        condition_id=body.condition_id,
        recipient_email=body.recipient_email,
        status=outcome.status,
        detail=outcome.detail,
    )


# ── Settings ───────────────────────────────────────────────────────────


@router.get("", response_model=TriggerSettingsResponse)
async def get_trigger_settings(
    organization_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    rules: RuleSet = Depends(get_rule_set),
):
    enabled = await trigger_settings_repo.get_or_create_defaults(db, organization_id, rules)
    return _settings_response(organization_id, rules, enabled)


@router.put("", response_model=TriggerSettingsResponse)
async def update_trigger_settings(
    body: TriggerSettingsUpdateRequest,
    organization_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    rules: RuleSet = Depends(get_rule_set),
):
    enabled = await trigger_settings_repo.update(
        db,
        organization_id,
        [(t.condition_id, t.is_enabled) for t in body.triggers],
        rules,
    )
    logger.info(
        "trigger_settings_updated",
        organization_id=organization_id,
        changed=[t.condition_id for t in body.triggers],
    )
    return _settings_response(organization_id, rules, enabled)


# ── History / state ────────────────────────────────────────────────────


@router.get("/events", response_model=AlertEventListResponse)
async def list_alert_events(
    organization_id: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=500),
    service: TriggerEvaluationService = Depends(get_trigger_service),
):
    events = await service.events.list_events(organization_id, limit=limit)
    return AlertEventListResponse(events=events, total=len(events))


@router.get("/states", response_model=AlertStateListResponse)
async def list_alert_states(
    organization_id: str = Query(..., min_length=1),
    service: TriggerEvaluationService = Depends(get_trigger_service),
):
    states = [
        await service.store.get(organization_id, cid)
        for cid in service.rules.condition_ids
    ]
    return AlertStateListResponse(states=states)


@router.get("/health")
async def triggers_health(
    rules: RuleSet = Depends(get_rule_set),
    channel: NotificationChannel = Depends(get_notification_channel),
):
    """Condition count plus the notification channel's circuit breaker."""
    breaker: Optional[CircuitBreaker] = getattr(channel, "breaker", None)
    degraded = breaker is not None and breaker.state == CircuitState.OPEN
    return {
        "status": "degraded" if degraded else "healthy",
        "conditions": len(rules),
        "channel": breaker.describe() if breaker is not None else None,
    }
