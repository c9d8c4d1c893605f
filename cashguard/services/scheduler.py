"""
Alert Scheduler — runs in a separate process (cashguard-scheduler).

NOT inside the API process. Prevents background jobs from blocking API requests.

Jobs:
1. Evaluation scan (every EVALUATION_SCAN_MINUTES): evaluate the latest
   stored snapshot of every organization against its enabled triggers
2. Retry sweep (every RETRY_SWEEP_MINUTES): redeliver failed alerts

Overlapping runs are safe: the alert store's compare-and-set transitions
decide which run dispatches.
"""

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cashguard.alerting.service import TriggerEvaluationService
from cashguard.db.repositories.alert_state import SqlAlchemyAlertStateStore
from cashguard.db.repositories.metrics import SqlMetricsProvider
from cashguard.db.repositories.trigger_settings import trigger_settings_repo

logger = structlog.get_logger(__name__)


class AlertScheduler:
    """Background scheduler for trigger evaluation and delivery retries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        service: TriggerEvaluationService,
        store: SqlAlchemyAlertStateStore,
        metrics: SqlMetricsProvider,
        evaluation_minutes: int = 60,
        retry_minutes: int = 10,
    ):
        self.session_factory = session_factory
        self.service = service
        self.store = store
        self.metrics = metrics
        self.evaluation_minutes = evaluation_minutes
        self.retry_minutes = retry_minutes
        self.scheduler = AsyncIOScheduler()

    def start(self):
        """Register and start all scheduled jobs."""
        self.scheduler.add_job(
            self.run_evaluation_scan,
            IntervalTrigger(minutes=self.evaluation_minutes),
            id="evaluation_scan",
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.run_retry_sweep,
            IntervalTrigger(minutes=self.retry_minutes),
            id="retry_sweep",
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            "alert_scheduler_started",
            evaluation_minutes=self.evaluation_minutes,
            retry_minutes=self.retry_minutes,
        )

    def stop(self):
        """Gracefully stop the scheduler."""
        self.scheduler.shutdown(wait=True)
        logger.info("alert_scheduler_stopped")

    async def run_evaluation_scan(self) -> dict[str, int]:
        """Evaluate every organization that has a stored snapshot."""
        logger.info("evaluation_scan_started")
        org_ids = await self.metrics.organization_ids()
        triggered = failed = 0

        for org_id in org_ids:
            try:
                triggered += await self._evaluate_org(org_id)
            except Exception as e:
                failed += 1
                logger.error("evaluation_failed", organization_id=org_id, error=str(e))

        logger.info(
            "evaluation_scan_completed",
            organizations=len(org_ids),
            newly_triggered=triggered,
            failed=failed,
        )
        return {"organizations": len(org_ids), "newly_triggered": triggered, "failed": failed}

    async def _evaluate_org(self, organization_id: str) -> int:
        snapshot = await self.metrics.latest_snapshot(organization_id)
        if snapshot is None:
            return 0

        async with self.session_factory() as session:
            enabled = await trigger_settings_repo.enabled_condition_ids(
                session, organization_id, self.service.rules
            )
            await session.commit()

        result = await self.service.evaluate(organization_id, snapshot, enabled)
        return len(result.newly_triggered)

    async def run_retry_sweep(self) -> dict[str, int]:
        """Redeliver failed alerts for every organization with active alerts."""
        org_ids = await self.store.organizations_with_active_alerts()
        retried = delivered = failed = 0

        for org_id in org_ids:
            try:
                result = await self.service.send_alerts_for_matching_conditions(org_id)
            except Exception as e:
                failed += 1
                logger.error("retry_sweep_failed", organization_id=org_id, error=str(e))
                continue
            retried += len(result.retried)
            delivered += len(result.delivered)

        if retried or failed:
            logger.info(
                "retry_sweep_run_completed",
                organizations=len(org_ids),
                retried=retried,
                delivered=delivered,
                failed=failed,
            )
        return {"organizations": len(org_ids), "retried": retried, "delivered": delivered, "failed": failed}
