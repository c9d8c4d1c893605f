"""
CashGuard Trigger Evaluation & Alerting Engine.

Components:
- schemas: Snapshot, alert state/event and result models
- rules: Condition catalog (data-driven predicates)
- evaluator: Pure snapshot → satisfied-condition evaluation
- state_store: Compare-and-set alert state + event log interfaces
- templates: Alert subject/body rendering
- channels: E-mail (SMTP, Resend) and log notification channels
- service: Reconciliation, dispatch and the retry sweep
"""
