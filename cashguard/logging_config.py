"""Structured logging setup (structlog over stdlib logging)."""

import logging
import sys

import structlog

from cashguard.config import settings


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """
    Configure structlog once per process.

    Request-scoped keys (request_id, organization_id) are merged from
    structlog contextvars, so anything bound in middleware shows up on
    every log line of that request.
    """
    level_name = (level or settings.log_level).upper()
    renderer = (
        structlog.processors.JSONRenderer()
        if (log_format or settings.log_format) == "json"
        else structlog.dev.ConsoleRenderer()
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
