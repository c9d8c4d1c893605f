"""
Circuit breaker for notification channels.

A mail provider that keeps failing is short-circuited: sends fail fast
with CircuitOpenError (recorded as "circuit open") instead of each one
waiting out the provider timeout. The retry sweep redelivers those
alerts once a probe send succeeds and the circuit closes.

    CLOSED ──(failure_threshold failures within window_seconds)──▶ OPEN
    OPEN ──(recovery_timeout elapsed)──▶ HALF_OPEN (one probe send)
    HALF_OPEN ──probe ok──▶ CLOSED      HALF_OPEN ──probe fails──▶ OPEN
"""

import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """The breaker rejected a call without attempting it."""

    def __init__(self, name: str, retry_in: float):
        self.name = name
        self.retry_in = retry_in
        super().__init__(f"Circuit breaker '{name}' is open (retry in {retry_in:.0f}s)")


class CircuitBreaker:
    """Failure-window breaker guarding one channel's provider calls."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        window_seconds: float = 60.0,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._last_error = ""

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._retry_in() <= 0:
            self._state = CircuitState.HALF_OPEN
            logger.info("circuit_half_open", breaker=self.name)
        return self._state

    def _retry_in(self) -> float:
        return self._opened_at + self.recovery_timeout - self._clock()

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run fn unless the circuit is open; failures count toward opening it."""
        self._admit()
        try:
            result = await fn(*args, **kwargs)
        except Exception as exc:
            self._record_failure(exc)
            raise
        except BaseException:
            # Cancelled mid-send: free the probe slot without counting a failure
            self._probe_in_flight = False
            raise
        self._record_success()
        return result

    def _admit(self) -> None:
        state = self.state
        if state == CircuitState.OPEN:
            logger.warning("circuit_open_rejected", breaker=self.name)
            raise CircuitOpenError(self.name, self._retry_in())
        if state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._probe_in_flight = True

    def _record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("circuit_closed", breaker=self.name)
        self.reset()

    def _record_failure(self, exc: Exception) -> None:
        now = self._clock()
        self._probe_in_flight = False
        self._last_error = str(exc) or type(exc).__name__

        if self._state == CircuitState.HALF_OPEN:
            self._trip(now)
            return

        self._failures.append(now)
        while self._failures and self._failures[0] <= now - self.window_seconds:
            self._failures.popleft()

        if len(self._failures) >= self.failure_threshold:
            self._trip(now)

    def _trip(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        logger.warning(
            "circuit_opened",
            breaker=self.name,
            failures=len(self._failures),
            threshold=self.failure_threshold,
            last_error=self._last_error,
        )

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures.clear()
        self._probe_in_flight = False
        self._last_error = ""

    def describe(self) -> dict[str, Any]:
        """Breaker status for health endpoints."""
        state = self.state
        return {
            "name": self.name,
            "state": state.value,
            "recent_failures": len(self._failures),
            "retry_in_seconds": max(round(self._retry_in(), 1), 0.0) if state == CircuitState.OPEN else 0.0,
            "last_error": self._last_error,
        }
