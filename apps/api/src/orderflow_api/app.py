from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from orderflow_api.core.settings import settings
from orderflow_api.db.session import async_session
from .api.errors import register_exception_handlers
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services.payments.gateway import get_default_gateway
from .workers import LoyaltyCycleScheduler


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    loyalty_scheduler = LoyaltyCycleScheduler(
        session_factory=_session_factory,
        cron=settings.loyalty_cycle_cron,
        timezone=settings.loyalty_cycle_timezone,
        trigger_label=settings.loyalty_cycle_trigger_label,
    )
    app.state.loyalty_cycle_scheduler = loyalty_scheduler

    loyalty_enabled = settings.loyalty_cycle_enabled
    if loyalty_enabled:
        loyalty_scheduler.start()
        logger.info(
            "Loyalty cycle scheduler enabled",
            cron=loyalty_scheduler.cron,
            timezone=loyalty_scheduler.timezone,
        )
    else:
        logger.info(
            "Loyalty cycle scheduler disabled",
            reason="loyalty_cycle_enabled is false",
        )

    if not settings.sumup_configured:
        logger.warning("SumUp credentials missing; checkout initiation will answer 503")

    try:
        yield
    finally:
        if loyalty_enabled and loyalty_scheduler.is_running:
            await loyalty_scheduler.stop()
        await get_default_gateway().aclose()


def create_app() -> FastAPI:
    """Application factory for the Orderflow FastAPI service."""
    configure_logging(
        service_name="orderflow-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Orderflow API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="orderflow-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    register_exception_handlers(app)
    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
