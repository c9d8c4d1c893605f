"""
CashGuard — Cash-Runway Trigger Evaluation & Alerting.

Architecture:
    cashguard/
    ├── alerting/        # Rules, evaluator, state store, channels, service
    ├── api/             # FastAPI routers (HTTP layer)
    ├── db/              # SQLAlchemy models, engine, repositories
    ├── middleware/      # Request context, error handling
    └── services/        # Scheduler, resilience (circuit breaker)

Module Boundaries:
    - Metrics are computed upstream; CashGuard only reads snapshots
    - Alert state lives in the store, never in the engine
    - One notification per inactive → active transition
    - Delivery failures are recorded, then retried by the sweep

Data Flow:
    Snapshot → ConditionEvaluator → Reconcile (CAS on AlertState)
    → NotificationChannel → AlertEvent

Version: 1.0.0
"""

__version__ = "1.0.0"
