"""
Request context for log correlation.

Every request gets a request_id (taken from X-Request-ID when a proxy
set one) that is echoed back and bound into the structlog context,
together with the organization being acted on when the query string
names one. Trigger evaluations and dispatch logs emitted while the
request runs therefore carry both keys.
"""

import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = structlog.get_logger(__name__)

# Liveness probes hit these every few seconds
_QUIET_PATHS = frozenset({"/health", "/api/v1/triggers/health"})


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds request_id / organization_id and times the request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id

        context = {"request_id": request_id, "method": request.method, "path": request.url.path}
        organization_id = request.query_params.get("organization_id")
        if organization_id:
            context["organization_id"] = organization_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(**context)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{elapsed_ms}ms"

        if request.url.path not in _QUIET_PATHS:
            logger.info("request_completed", status=response.status_code, elapsed_ms=elapsed_ms)
        return response
