"""
Error handling for the HTTP layer.

- CashGuardError subclasses map to their own status code and error code
- Anything else is caught by the outermost middleware and returned as a
  generic 500 with an error_id. Stack traces and DB errors never leave
  the server.
"""

import uuid

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from cashguard.config import settings
from cashguard.exceptions import CashGuardError, ErrorCode

logger = structlog.get_logger(__name__)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Last line of defence for anything the route handlers let escape.

    The client gets a generic message plus an error_id and the
    request_id; the traceback is logged under the same ids.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            error_id = uuid.uuid4().hex
            request_id = getattr(request.state, "request_id", None)
            logger.exception(
                "unhandled_exception",
                error_id=error_id,
                request_id=request_id,
                path=request.url.path,
                method=request.method,
                error=str(exc),
            )

            body: dict = {
                "error": "An internal error occurred. Please try again later.",
                "code": ErrorCode.INTERNAL_ERROR.value,
                "error_id": error_id,
                "request_id": request_id,
                "status": 500,
            }
            if settings.debug:
                body["debug_hint"] = type(exc).__name__
            return JSONResponse(status_code=500, content=body)


async def cashguard_exception_handler(request: Request, exc: CashGuardError) -> JSONResponse:
    """Handle CashGuardError exceptions."""
    request_id = getattr(request.state, "request_id", None)

    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "cashguard_error",
        error_code=exc.code.value,
        message=exc.message,
        status_code=exc.status_code,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={**exc.to_dict(), "request_id": request_id, "status": exc.status_code},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers with FastAPI app."""
    app.add_exception_handler(CashGuardError, cashguard_exception_handler)
