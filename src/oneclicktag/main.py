"""FastAPI application for OneClickTag provisioning."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from .api.errors import provisioning_error_handler
from .api.routes import router as api_router
from .config import get_settings
from .connectors.exceptions import ProvisioningError
from .observability.logging import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()
    configure_logging(settings.environment, settings.log_level)

    from .database.connection import db_manager
    from .database.migrations import create_tables
    from .connectors.http_client import get_http_client, close_http_client

    db_manager.initialize()
    await create_tables()
    get_http_client()
    logger.info("%s %s started", settings.app_name, settings.app_version)

    yield

    await close_http_client()
    await db_manager.close()
    logger.info("%s stopped", settings.app_name)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Google Tag Manager, Ads and GA4 provisioning",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    app.add_exception_handler(ProvisioningError, provisioning_error_handler)
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    if settings.enable_metrics:
        @app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            from .observability.metrics import generate_metrics_text
            return PlainTextResponse(
                generate_metrics_text(), media_type="text/plain; version=0.0.4; charset=utf-8"
            )

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "oneclicktag.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info"
    )
