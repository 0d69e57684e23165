"""
LabelFlow
FastAPI application entry point

- Request correlation ids (X-Correlation-ID in, out, and in every log line)
- Error sanitization middleware
- Taxonomy errors rendered with their HTTP status
- Readiness gated on database and circuit state
- Background callback reconciliation and tracking sync
- HTTP client lifecycle management
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from labelflow import __version__
from labelflow.api.routes import carrier_webhooks, fulfillment, health, print_jobs
from labelflow.core.config import settings
from labelflow.core.database import dispose_engine, get_session_factory, init_models
from labelflow.core.error_handler import ErrorSanitizationMiddleware, labelflow_exception_handler
from labelflow.core.exceptions import LabelFlowError
from labelflow.core.logging_config import setup_logging
from labelflow.middleware.request_context import RequestContextMiddleware
from labelflow.services.container import ServiceContainer, build_services

logger = logging.getLogger(__name__)


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the application.

    Tests pass a prebuilt container; otherwise services are built from
    Settings at startup and torn down at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.LOG_LEVEL)

        owned = app.state.services is None
        if owned:
            if settings.AUTO_CREATE_TABLES:
                await init_models()
            app.state.services = build_services(settings, get_session_factory())

        container: ServiceContainer = app.state.services
        await container.jobs.start()
        logger.info(f"{settings.APP_NAME} {__version__} started (tracking mode: {settings.TRACKING_UPDATE_MODE})")

        yield

        await container.jobs.stop()
        if owned:
            # Close HTTP clients to prevent connection leaks
            await container.close()
            await dispose_engine()
        logger.info(f"{settings.APP_NAME} stopped")

    app = FastAPI(
        lifespan=lifespan,
        title="LabelFlow API",
        description="Order to printed shipping label: shipment creation, label printing and status callbacks.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=[
            {"name": "Health", "description": "Liveness and readiness"},
            {"name": "Fulfillment", "description": "Ship command and run status"},
            {"name": "Print Jobs", "description": "Print job inspection and manual retry"},
            {"name": "Webhooks", "description": "Inbound carrier tracking events"},
        ],
    )
    app.state.services = services

    app.add_exception_handler(LabelFlowError, labelflow_exception_handler)

    # Order matters: last added runs first, so the correlation id is set
    # before the sanitizer can report it
    app.add_middleware(ErrorSanitizationMiddleware)
    app.add_middleware(RequestContextMiddleware)

    app.include_router(health.router)
    app.include_router(fulfillment.router, prefix="/api")
    app.include_router(print_jobs.router, prefix="/api")
    app.include_router(carrier_webhooks.router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "labelflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
