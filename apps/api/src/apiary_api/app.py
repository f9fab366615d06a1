from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from apiary_api.core.settings import settings
from apiary_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .workers import PartnerExportWorker, PaymentReconciliationSweeper


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = PaymentReconciliationSweeper(
        session_factory=_session_factory,
        interval_seconds=settings.reconciliation_interval_seconds,
        window_days=settings.reconciliation_window_days,
        page_size=settings.reconciliation_page_size,
        trigger_label=settings.reconciliation_trigger_label,
    )
    export_worker = PartnerExportWorker(
        session_factory=_session_factory,
        interval_seconds=settings.partner_export_interval_seconds,
    )
    app.state.reconciliation_sweeper = sweeper
    app.state.partner_export_worker = export_worker

    sweeper_enabled = settings.reconciliation_worker_enabled
    if sweeper_enabled:
        sweeper.start()
        logger.info(
            "Payment reconciliation sweeper enabled",
            interval_seconds=sweeper.interval_seconds,
            window_days=settings.reconciliation_window_days,
        )
    else:
        logger.info(
            "Payment reconciliation sweeper disabled",
            reason="reconciliation_worker_enabled is false",
        )

    export_enabled = settings.partner_export_worker_enabled
    if export_enabled:
        export_worker.start()
        logger.info("Partner export worker enabled", interval_seconds=export_worker.interval_seconds)
    else:
        logger.info(
            "Partner export worker disabled",
            reason="partner_export_worker_enabled is false",
        )

    try:
        yield
    finally:
        if sweeper_enabled and sweeper.is_running:
            await sweeper.stop()
        if export_enabled and export_worker.is_running:
            await export_worker.stop()


def create_app() -> FastAPI:
    """Application factory for the apiary API service."""
    configure_logging(
        service_name="apiary-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Apiary API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
