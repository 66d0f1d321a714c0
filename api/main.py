"""
FastAPI application initialization
"""

from typing import Optional

from fastapi import FastAPI
from api.routes import correlations, health, stats, webhooks
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.logging import setup_logging
from tracking.services import TrackingServices
import logging

logger = logging.getLogger(__name__)


def create_app(services: Optional[TrackingServices] = None, start_background: Optional[bool] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        services: Component container; built from settings when omitted
        start_background: Start delivery workers and the scheduler on
            startup; defaults to SCHEDULER_ENABLED
    """
    app = FastAPI(
        title="Tracking & Sync Service",
        description="Webhook ingestion, correlation and analytics store synchronization",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.add_middleware(RequestContextMiddleware)

    app.state.services = services or TrackingServices()
    if start_background is None:
        start_background = app.state.services.config.SCHEDULER_ENABLED

    app.include_router(webhooks.router)
    app.include_router(health.router)
    app.include_router(stats.router)
    app.include_router(correlations.router)

    @app.on_event("startup")
    async def startup_event():
        """Application startup event"""
        config = app.state.services.config
        logger.info("Starting Tracking & Sync Service")
        logger.info(f"Environment: {config.ENVIRONMENT}")
        logger.info(f"Database: {config.DATABASE_URL.split('@')[1] if '@' in config.DATABASE_URL else 'configured'}")

        if start_background:
            await app.state.services.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        """Application shutdown event"""
        logger.info("Shutting down Tracking & Sync Service")
        if start_background:
            await app.state.services.stop()

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": "Tracking & Sync Service",
            "version": "1.0.0",
            "docs": "/docs",
            "health": "/health",
            "endpoints": {
                "webhooks": "/webhooks/{order|payment|shipping|support|inventory|user}",
                "stats": "/stats",
                "dead_letters": "/dead-letters",
                "correlations": "/correlations/{correlation_id}"
            }
        }

    return app


setup_logging(settings.LOG_LEVEL)
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host=settings.API_HOST, port=settings.API_PORT)
