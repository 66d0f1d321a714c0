"""
Delivery queue and scheduler statistics endpoints
"""
from datetime import datetime
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from api.dependencies import get_db, get_services
from schemas.api import (
    DeadLetterInfo,
    DeadLetterResponse,
    ScheduleRunSummary,
    StatsResponse,
    TierStateInfo,
)
from models.base import AlertStatus
from models.notification import NotificationAlert
from tracking.services import TrackingServices
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"])


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    limit: int = Query(10, ge=1, le=100, description="Number of recent runs to return"),
    db: AsyncSession = Depends(get_db),
    services: TrackingServices = Depends(get_services)
):
    """
    Get delivery and scheduler statistics.

    Returns:
    - Task counts by status
    - Remaining analytics store quota
    - Per-tier state and recent schedule runs
    """
    request_id = f"req_{uuid.uuid4().hex[:12]}"

    logger.info(f"[{request_id}] GET /stats")

    task_counts = await services.engine.counts()

    pending_alerts_result = await db.execute(
        select(func.count()).select_from(NotificationAlert).where(
            NotificationAlert.status == AlertStatus.PENDING
        )
    )
    pending_alerts = pending_alerts_result.scalar() or 0

    tiers = [
        TierStateInfo(
            tier=state.tier.value,
            last_slot=state.last_slot,
            last_success_at=state.last_success_at,
            last_failure_at=state.last_failure_at,
            total_runs=state.total_runs or 0
        )
        for state in await services.scheduler.tier_states()
    ]

    recent_runs = [
        ScheduleRunSummary(
            tier=run.tier.value,
            slot=run.slot,
            status=run.status.value,
            started_at=run.started_at,
            finished_at=run.finished_at,
            duration_seconds=run.duration_seconds,
            records_processed=run.records_processed or 0,
            errors=run.errors or []
        )
        for run in await services.scheduler.recent_runs(limit)
    ]

    logger.info(
        f"[{request_id}] Stats: {task_counts.get('pending', 0)} pending, "
        f"{task_counts.get('dead_lettered', 0)} dead-lettered"
    )

    return StatsResponse(
        timestamp=datetime.utcnow(),
        task_counts=task_counts,
        remaining_quota=services.delivery.get_remaining_quota(),
        consecutive_delivery_failures=services.engine.consecutive_failures,
        tiers=tiers,
        recent_runs=recent_runs,
        pending_alerts=pending_alerts,
        request_id=request_id
    )


@router.get("/dead-letters", response_model=DeadLetterResponse)
async def get_dead_letters(
    limit: int = Query(100, ge=1, le=1000),
    services: TrackingServices = Depends(get_services)
):
    """Dead-lettered delivery tasks awaiting operator action"""
    tasks = await services.engine.dead_letters(limit)
    return DeadLetterResponse(
        total=len(tasks),
        dead_letters=[
            DeadLetterInfo(
                task_id=task.id,
                target_resource=task.target_resource,
                logical_key=task.logical_key,
                idempotency_key=task.idempotency_key,
                attempt=task.attempt,
                last_error=task.last_error,
                occurred_at=task.occurred_at,
                updated_at=task.updated_at
            )
            for task in tasks
        ]
    )
