"""
Scheduler Entry Point — runs in a separate process.

Usage:
    python -m cashguard.scheduler_main

This does NOT run a web server. It runs the APScheduler background loop
for the evaluation scan and the delivery retry sweep.
"""

import asyncio
import signal

import structlog

from cashguard import __version__
from cashguard.alerting.channels import build_notification_channel
from cashguard.alerting.rules import default_rule_set
from cashguard.alerting.service import TriggerEvaluationService
from cashguard.config import settings
from cashguard.db.engine import close_db, get_session_factory
from cashguard.db.repositories.alert_state import SqlAlchemyAlertStateStore
from cashguard.db.repositories.metrics import SqlMetricsProvider
from cashguard.db.repositories.organization import SqlRecipientResolver
from cashguard.logging_config import configure_logging
from cashguard.services.scheduler import AlertScheduler

logger = structlog.get_logger(__name__)


async def main():
    """Initialize and run the scheduler."""
    configure_logging()
    logger.info("scheduler_starting", version=__version__, channel=settings.alert_channel)

    session_factory = get_session_factory()

    store = SqlAlchemyAlertStateStore(session_factory)
    metrics = SqlMetricsProvider(session_factory)
    service = TriggerEvaluationService(
        rules=default_rule_set(settings),
        store=store,
        events=store,
        channel=build_notification_channel(settings),
        recipients=SqlRecipientResolver(session_factory, roles=settings.alert_recipient_roles),
        metrics=metrics,
        retry_grace_seconds=settings.retry_grace_seconds,
    )
    scheduler = AlertScheduler(
        session_factory=session_factory,
        service=service,
        store=store,
        metrics=metrics,
        evaluation_minutes=settings.evaluation_scan_minutes,
        retry_minutes=settings.retry_sweep_minutes,
    )

    # Catch up on anything that changed or failed while the process was down
    logger.info("running_initial_scan")
    scan = await scheduler.run_evaluation_scan()
    sweep = await scheduler.run_retry_sweep()
    logger.info("initial_scan_completed", **scan, retried=sweep["retried"])

    scheduler.start()

    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()

    def _handle_signal(signum: int) -> None:
        logger.info("shutdown_signal_received", signal=signal.Signals(signum).name)
        stop_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, _handle_signal, signum)

    logger.info(
        "scheduler_running",
        evaluation_minutes=settings.evaluation_scan_minutes,
        retry_minutes=settings.retry_sweep_minutes,
    )
    await stop_event.wait()

    scheduler.stop()
    await close_db()
    logger.info("scheduler_shutdown_complete")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
