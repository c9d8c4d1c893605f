"""
Trigger Evaluation Service — reconcile satisfied conditions against stored
alert state and dispatch one notification per inactive → active edge.

Pipeline (evaluate):
1. Validate the snapshot and the condition selection (nothing mutated on error)
2. Evaluate the selected rules against the snapshot (pure)
3. Per rule, concurrently:
   - satisfied & inactive  → CAS to active; the winner dispatches and records
   - unsatisfied & active  → CAS to resolved (silent)
   - satisfied & active    → still active, no dispatch
4. Storage errors are reported per condition; only a total outage raises

Pipeline (retry sweep):
    active states whose latest event for the current activation failed
    → claim_redelivery (CAS on activation + dispatch_attempts) → dispatch → record
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

import structlog

from cashguard.alerting.channels import NO_RECIPIENTS, NotificationChannel
from cashguard.alerting.evaluator import evaluate_conditions, snapshot_metrics
from cashguard.alerting.rules import ConditionRule, RuleSet
from cashguard.alerting.schemas import (
    AlertEvent,
    AlertState,
    Audience,
    DeliveryOutcome,
    DeliveryStatus,
    DispatchFailure,
    EvaluationResult,
    FailureKind,
    MetricsSnapshot,
    RetrySweepResult,
    ensure_utc,
    utcnow,
)
from cashguard.alerting.state_store import AlertEventLog, AlertStateStore
from cashguard.alerting.templates import render_alert
from cashguard.exceptions import (
    CashGuardError,
    SnapshotValidationError,
    StorageError,
    StorageUnavailableError,
)

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

NO_SNAPSHOT = "No metrics snapshot to render the alert from"

_TRIGGERED = "triggered"
_RESOLVED = "resolved"
_STILL_ACTIVE = "still_active"


class RecipientResolver(Protocol):
    """Organization membership lookup (who gets an organization's alerts)."""

    async def resolve(self, organization_id: str) -> Audience:
        ...


class MetricsProvider(Protocol):
    """Supplies the latest MetricsSnapshot for an organization."""

    async def latest_snapshot(self, organization_id: str) -> Optional[MetricsSnapshot]:
        ...


def recorded_values(snapshot: MetricsSnapshot) -> dict[str, Optional[float]]:
    """Snapshot values as stored on an AlertEvent. Unlimited runway is stored as None."""
    return {
        name: (None if value == float("inf") else value)
        for name, value in snapshot_metrics(snapshot).items()
    }


class _AudienceLookup:
    """Resolve recipients at most once per operation, on first dispatch."""

    def __init__(self, resolver: RecipientResolver, organization_id: str):
        self._resolver = resolver
        self._organization_id = organization_id
        self._task: Optional[asyncio.Future] = None

    async def get(self) -> Audience:
        if self._task is None:
            self._task = asyncio.ensure_future(self._resolver.resolve(self._organization_id))
        return await self._task


class TriggerEvaluationService:
    """
    Orchestrates evaluation, state reconciliation and dispatch.

    Holds no alert state of its own: every call re-reads the store, and
    the store's compare-and-set transitions decide which caller dispatches.
    """

    def __init__(
        self,
        rules: RuleSet,
        store: AlertStateStore,
        events: AlertEventLog,
        channel: NotificationChannel,
        recipients: RecipientResolver,
        metrics: Optional[MetricsProvider] = None,
        clock: Clock = utcnow,
        retry_grace_seconds: float = 300,
    ):
        self.rules = rules
        self.store = store
        self.events = events
        self.channel = channel
        self.recipients = recipients
        self.metrics = metrics
        self.clock = clock
        self.retry_grace = timedelta(seconds=retry_grace_seconds)

    # ── Evaluate ───────────────────────────────────────────────────────

    async def evaluate(
        self,
        organization_id: str,
        snapshot: MetricsSnapshot,
        condition_ids: Optional[list[str]] = None,
    ) -> EvaluationResult:
        """
        Evaluate a snapshot and reconcile every selected condition.

        Args:
            organization_id: Organization being evaluated
            snapshot: Metrics for that organization
            condition_ids: Optional subset of the RuleSet (None = all)

        Returns:
            EvaluationResult with condition ids in RuleSet order

        Raises:
            SnapshotValidationError: snapshot belongs to another organization,
                or an unknown condition id was selected
            StorageUnavailableError: every selected condition failed on storage
        """
        if snapshot.organization_id != organization_id:
            raise SnapshotValidationError(
                "Snapshot organization does not match request",
                details={
                    "organization_id": organization_id,
                    "snapshot_organization_id": snapshot.organization_id,
                },
            )
        selected = self.rules.select(condition_ids)
        if not len(selected):
            return EvaluationResult()

        satisfied = evaluate_conditions(snapshot, selected)
        values = recorded_values(snapshot)
        audience = _AudienceLookup(self.recipients, organization_id)

        outcomes = await asyncio.gather(*(
            self._reconcile(organization_id, rule, rule.condition_id in satisfied, values, audience)
            for rule in selected
        ))

        result = EvaluationResult()
        storage_failures = 0
        for rule, (bucket, failures) in zip(selected, outcomes):
            if bucket == _TRIGGERED:
                result.newly_triggered.append(rule.condition_id)
            elif bucket == _RESOLVED:
                result.newly_resolved.append(rule.condition_id)
            elif bucket == _STILL_ACTIVE:
                result.still_active.append(rule.condition_id)
            elif failures and failures[0].kind == FailureKind.STORAGE:
                storage_failures += 1
            result.failures.extend(failures)

        if storage_failures == len(selected):
            raise StorageUnavailableError(
                organization_id, [f.reason for f in result.failures]
            )

        logger.info(
            "trigger_evaluation_completed",
            organization_id=organization_id,
            satisfied=len(satisfied),
            newly_triggered=len(result.newly_triggered),
            newly_resolved=len(result.newly_resolved),
            still_active=len(result.still_active),
            failures=len(result.failures),
        )
        return result

    async def _reconcile(
        self,
        organization_id: str,
        rule: ConditionRule,
        is_satisfied: bool,
        values: dict[str, Optional[float]],
        audience: _AudienceLookup,
    ) -> tuple[Optional[str], list[DispatchFailure]]:
        condition_id = rule.condition_id
        try:
            state = await self.store.get(organization_id, condition_id)

            if is_satisfied and state.active:
                return _STILL_ACTIVE, []

            if is_satisfied:
                triggered_at = self.clock()
                applied = await self.store.transition_to_active(
                    organization_id, condition_id, triggered_at
                )
                if not applied:
                    # Another evaluation won the edge and owns the dispatch.
                    logger.info(
                        "alert_transition_not_applied",
                        organization_id=organization_id,
                        condition_id=condition_id,
                    )
                    return _STILL_ACTIVE, []

                logger.info(
                    "alert_triggered",
                    organization_id=organization_id,
                    condition_id=condition_id,
                    severity=rule.severity.value,
                    metric=rule.metric,
                    metric_value=values.get(rule.metric),
                    threshold=rule.threshold,
                )
                _, failures = await self._dispatch(
                    organization_id, rule, values, audience, triggered_at, attempt=1
                )
                return _TRIGGERED, failures

            if state.active:
                applied = await self.store.transition_to_resolved(
                    organization_id, condition_id, self.clock()
                )
                if applied:
                    logger.info(
                        "condition_resolved",
                        organization_id=organization_id,
                        condition_id=condition_id,
                    )
                    return _RESOLVED, []
            return None, []

        except StorageError as e:
            logger.warning(
                "alert_storage_error",
                organization_id=organization_id,
                condition_id=condition_id,
                error=e.message,
            )
            return None, [_storage_failure(condition_id, e)]

    # ── Retry sweep ────────────────────────────────────────────────────

    async def send_alerts_for_matching_conditions(self, organization_id: str) -> RetrySweepResult:
        """
        Redeliver alerts whose last dispatch for the current activation failed.

        Idempotent: delivered conditions are skipped, and claim_redelivery
        guarantees one redelivery per failed attempt even under concurrent
        sweeps. Never re-evaluates metrics.
        """
        try:
            active = await self.store.list_active(organization_id)
        except StorageError as e:
            raise StorageUnavailableError(organization_id, [e.message]) from e

        candidates: list[tuple[ConditionRule, AlertState]] = []
        for state in active:
            rule = self.rules.get(state.condition_id)
            if rule is None:
                logger.warning(
                    "stale_condition_ignored",
                    organization_id=organization_id,
                    condition_id=state.condition_id,
                )
                continue
            candidates.append((rule, state))

        result = RetrySweepResult()
        if not candidates:
            return result

        order = {cid: i for i, cid in enumerate(self.rules.condition_ids)}
        candidates.sort(key=lambda pair: order[pair[0].condition_id])

        audience = _AudienceLookup(self.recipients, organization_id)
        outcomes = await asyncio.gather(*(
            self._redeliver(organization_id, rule, state, audience)
            for rule, state in candidates
        ))

        for (rule, _), (retried, outcome, failures) in zip(candidates, outcomes):
            if retried:
                result.retried.append(rule.condition_id)
            if outcome is not None and outcome.ok:
                result.delivered.append(rule.condition_id)
            result.failures.extend(failures)

        if result.retried or result.failures:
            logger.info(
                "retry_sweep_completed",
                organization_id=organization_id,
                retried=len(result.retried),
                delivered=len(result.delivered),
                failures=len(result.failures),
            )
        return result

    async def _redeliver(
        self,
        organization_id: str,
        rule: ConditionRule,
        state: AlertState,
        audience: _AudienceLookup,
    ) -> tuple[bool, Optional[DeliveryOutcome], list[DispatchFailure]]:
        condition_id = rule.condition_id
        triggered_at = ensure_utc(state.last_triggered_at) or self.clock()
        try:
            latest = await self.events.latest(organization_id, condition_id)
            if latest is not None and ensure_utc(latest.triggered_at) < triggered_at:
                latest = None  # belongs to an earlier activation

            if latest is not None:
                if latest.status == DeliveryStatus.DELIVERED:
                    return False, None, []
                values = dict(latest.snapshot_values)
            else:
                # Activated but never recorded (crash between CAS and record).
                if self.clock() - triggered_at < self.retry_grace:
                    return False, None, []
                values = await self._current_values(organization_id)
                if values is None:
                    logger.warning(
                        "alert_redelivery_deferred",
                        organization_id=organization_id,
                        condition_id=condition_id,
                        reason=NO_SNAPSHOT,
                    )
                    return False, None, [DispatchFailure(
                        condition_id=condition_id,
                        kind=FailureKind.DELIVERY,
                        reason=NO_SNAPSHOT,
                    )]

            claimed = await self.store.claim_redelivery(
                organization_id, condition_id, state.dispatch_attempts, state.last_triggered_at
            )
            if not claimed:
                return False, None, []
        except StorageError as e:
            logger.warning(
                "alert_storage_error",
                organization_id=organization_id,
                condition_id=condition_id,
                error=e.message,
            )
            return False, None, [_storage_failure(condition_id, e)]

        logger.info(
            "alert_redelivery",
            organization_id=organization_id,
            condition_id=condition_id,
            attempt=state.dispatch_attempts + 1,
        )
        outcome, failures = await self._dispatch(
            organization_id, rule, values, audience, triggered_at,
            attempt=state.dispatch_attempts + 1,
        )
        return True, outcome, failures

    async def _current_values(self, organization_id: str) -> Optional[dict[str, Optional[float]]]:
        if self.metrics is None:
            return None
        snapshot = await self.metrics.latest_snapshot(organization_id)
        return recorded_values(snapshot) if snapshot is not None else None

    # ── On-demand ──────────────────────────────────────────────────────

    async def send_alert_email(
        self,
        organization_id: str,
        condition_id: str,
        recipient: str,
        snapshot: MetricsSnapshot,
    ) -> DeliveryOutcome:
        """
        Render one condition's alert from a snapshot and send it to a single
        address, whether or not the condition currently holds.

        Leaves AlertState and the event log untouched, so it never counts as
        the alert for an activation.
        """
        rule = self.rules.select([condition_id]).get(condition_id)
        audience = await self.recipients.resolve(organization_id)
        message = render_alert(rule, recorded_values(snapshot), audience.organization_name)
        outcome = await self._send([recipient], message.subject, message.body)
        logger.info(
            "on_demand_alert_sent",
            organization_id=organization_id,
            condition_id=condition_id,
            status=outcome.status.value,
            detail=outcome.detail,
        )
        return outcome

    # ── Dispatch ───────────────────────────────────────────────────────

    async def _dispatch(
        self,
        organization_id: str,
        rule: ConditionRule,
        values: dict[str, Optional[float]],
        audience: _AudienceLookup,
        triggered_at: datetime,
        attempt: int,
    ) -> tuple[DeliveryOutcome, list[DispatchFailure]]:
        """Send one alert and record the outcome. Never raises for delivery problems."""
        condition_id = rule.condition_id
        recipients: list[str] = []
        try:
            resolved = await audience.get()
        except CashGuardError as e:
            outcome = DeliveryOutcome.failed(f"Recipient lookup failed: {e.message}")
        else:
            recipients = list(resolved.recipients)
            if not recipients:
                outcome = DeliveryOutcome.failed(NO_RECIPIENTS)
            else:
                message = render_alert(rule, values, resolved.organization_name)
                outcome = await self._send(recipients, message.subject, message.body)

        failures: list[DispatchFailure] = []
        if not outcome.ok:
            logger.warning(
                "alert_dispatch_failed",
                organization_id=organization_id,
                condition_id=condition_id,
                attempt=attempt,
                reason=outcome.detail,
            )
            failures.append(DispatchFailure(
                condition_id=condition_id,
                kind=FailureKind.DELIVERY,
                reason=outcome.detail,
            ))

        event = AlertEvent(
            organization_id=organization_id,
            condition_id=condition_id,
            severity=rule.severity,
            snapshot_values=values,
            triggered_at=triggered_at,
            dispatched_at=self.clock(),
            status=outcome.status,
            detail=outcome.detail,
            recipients=recipients,
            attempt=attempt,
        )
        try:
            await self.events.append(event)
        except StorageError as e:
            logger.error(
                "alert_event_record_failed",
                organization_id=organization_id,
                condition_id=condition_id,
                event_id=event.event_id,
                error=e.message,
            )
            failures.append(_storage_failure(condition_id, e))

        return outcome, failures

    async def _send(self, recipients: list[str], subject: str, body: str) -> DeliveryOutcome:
        try:
            return await self.channel.send(recipients, subject, body)
        except Exception as e:
            logger.exception("alert_channel_raised", error=str(e))
            return DeliveryOutcome.failed(str(e) or type(e).__name__)


def _storage_failure(condition_id: str, error: StorageError) -> DispatchFailure:
    return DispatchFailure(
        condition_id=condition_id,
        kind=FailureKind.STORAGE,
        reason=error.message,
        retryable=error.retryable,
    )
