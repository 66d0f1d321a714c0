"""
Health check endpoint with database, analytics store and channel status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from api.dependencies import get_db, get_services
from core.exceptions import DeliveryError
from schemas.api import HealthCheckResponse
from tracking.services import TrackingServices
from datetime import datetime
import asyncio
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])

PROBE_TIMEOUT_SECONDS = 5.0


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    services: TrackingServices = Depends(get_services)
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Analytics store reachability
    - Notification channel reachability
    - Delivery queue counts
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    # Check analytics store
    store_reachable = False
    try:
        store_reachable = await asyncio.wait_for(services.delivery.ping(), timeout=PROBE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Analytics store health probe timed out")
    except DeliveryError as e:
        logger.warning(f"Analytics store unreachable: {e.message}", extra={"error_context": e.to_dict()})

    channels = await services.dispatcher.check()

    task_counts = {}
    if db_connected:
        try:
            task_counts = await services.engine.counts()
        except Exception as e:
            logger.error(f"Failed to count delivery tasks: {str(e)}")

    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        analytics_store_reachable=store_reachable,
        notification_channels=channels,
        task_counts=task_counts,
        workers_running=services.engine.running,
        scheduler_running=services.scheduler.scheduler is not None
    )
