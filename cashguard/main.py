"""
CashGuard — FastAPI Application.

Run: uvicorn cashguard.main:app --host 0.0.0.0 --port 8001 --reload

Routes:
  - /api/v1/triggers/*   ← evaluate, retry deliveries, settings, history
  - GET /health          ← liveness probe
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cashguard import __version__
from cashguard.api.routers.triggers import router as triggers_router
from cashguard.config import settings
from cashguard.db.engine import close_db, init_db
from cashguard.logging_config import configure_logging
from cashguard.middleware.error_handler import ErrorHandlerMiddleware, register_exception_handlers
from cashguard.middleware.request_context import RequestContextMiddleware

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database on startup and dispose the engine on shutdown."""
    logger.info("cashguard_starting", version=__version__, channel=settings.alert_channel)
    await init_db()
    yield
    await close_db()
    logger.info("cashguard_shutdown")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    configure_logging()

    app = FastAPI(
        title="CashGuard",
        description=(
            "Cash-runway trigger evaluation and alerting.\n\n"
            "Snapshot → Condition evaluation → Alert state reconciliation → E-mail dispatch"
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # ── Middleware (last added = outermost) ──
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(triggers_router)

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "healthy", "version": __version__}

    return app


app = create_app()
