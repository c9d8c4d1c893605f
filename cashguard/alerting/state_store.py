"""
Alert State Store — per (organization, condition) state with atomic transitions.

The compare-and-set transitions are the only concurrency control in the
engine: two evaluations racing on the same condition both call
transition_to_active, exactly one gets True and dispatches.

InMemoryAlertStateStore is the reference implementation (single process);
the SQLAlchemy implementation lives in cashguard.db.repositories.alert_state.
"""

import asyncio
from datetime import datetime
from typing import Optional, Protocol

from cashguard.alerting.schemas import AlertEvent, AlertState


class AlertStateStore(Protocol):
    """Persisted alert state with compare-and-set transitions."""

    async def get(self, organization_id: str, condition_id: str) -> AlertState:
        """Current state; absent records read as inactive."""
        ...

    async def transition_to_active(
        self, organization_id: str, condition_id: str, triggered_at: datetime
    ) -> bool:
        """Set active=True only if currently inactive. Returns whether it applied."""
        ...

    async def transition_to_resolved(
        self, organization_id: str, condition_id: str, resolved_at: datetime
    ) -> bool:
        """Set active=False only if currently active. Returns whether it applied."""
        ...

    async def claim_redelivery(
        self,
        organization_id: str,
        condition_id: str,
        seen_attempts: int,
        seen_triggered_at: Optional[datetime],
    ) -> bool:
        """
        Bump dispatch_attempts only if the same activation is still active
        and unchanged since read. A resolve and re-activation in between
        resets the counter, so the activation timestamp is compared too.
        """
        ...

    async def list_active(self, organization_id: str) -> list[AlertState]:
        ...


class AlertEventLog(Protocol):
    """Append-only log of dispatch attempts."""

    async def append(self, event: AlertEvent) -> None:
        ...

    async def latest(self, organization_id: str, condition_id: str) -> Optional[AlertEvent]:
        ...

    async def list_events(self, organization_id: str, limit: int = 50) -> list[AlertEvent]:
        ...


class InMemoryAlertStateStore:
    """
    Dict-backed store. Every mutation runs under one asyncio.Lock so the
    check and the write of a transition can't interleave.
    """

    def __init__(self):
        self._states: dict[tuple[str, str], AlertState] = {}
        self._events: list[AlertEvent] = []
        self._lock = asyncio.Lock()

    # ── AlertStateStore ──────────────────────────────────────────────

    async def get(self, organization_id: str, condition_id: str) -> AlertState:
        state = self._states.get((organization_id, condition_id))
        if state is None:
            return AlertState(organization_id=organization_id, condition_id=condition_id)
        return state.model_copy()

    async def transition_to_active(
        self, organization_id: str, condition_id: str, triggered_at: datetime
    ) -> bool:
        async with self._lock:
            state = self._get_or_create(organization_id, condition_id)
            if state.active:
                return False
            state.active = True
            state.last_triggered_at = triggered_at
            state.dispatch_attempts = 1
            return True

    async def transition_to_resolved(
        self, organization_id: str, condition_id: str, resolved_at: datetime
    ) -> bool:
        async with self._lock:
            state = self._get_or_create(organization_id, condition_id)
            if not state.active:
                return False
            state.active = False
            state.last_resolved_at = resolved_at
            return True

    async def claim_redelivery(
        self,
        organization_id: str,
        condition_id: str,
        seen_attempts: int,
        seen_triggered_at: Optional[datetime],
    ) -> bool:
        async with self._lock:
            state = self._states.get((organization_id, condition_id))
            if state is None or not state.active:
                return False
            if state.dispatch_attempts != seen_attempts:
                return False
            if state.last_triggered_at != seen_triggered_at:
                return False
            state.dispatch_attempts += 1
            return True

    async def list_active(self, organization_id: str) -> list[AlertState]:
        return [
            s.model_copy()
            for (org, _), s in self._states.items()
            if org == organization_id and s.active
        ]

    # ── AlertEventLog ────────────────────────────────────────────────

    async def append(self, event: AlertEvent) -> None:
        async with self._lock:
            self._events.append(event)

    async def latest(self, organization_id: str, condition_id: str) -> Optional[AlertEvent]:
        for event in reversed(self._events):
            if event.organization_id == organization_id and event.condition_id == condition_id:
                return event
        return None

    async def list_events(self, organization_id: str, limit: int = 50) -> list[AlertEvent]:
        matching = [e for e in reversed(self._events) if e.organization_id == organization_id]
        return matching[:limit]

    def _get_or_create(self, organization_id: str, condition_id: str) -> AlertState:
        key = (organization_id, condition_id)
        state = self._states.get(key)
        if state is None:
            state = AlertState(organization_id=organization_id, condition_id=condition_id)
            self._states[key] = state
        return state
