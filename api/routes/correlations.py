"""
Cross-system timeline endpoint
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_db, get_services
from schemas.api import CorrelationResponse, TimelineEvent
from tracking.services import TrackingServices

router = APIRouter(tags=["Correlations"])


@router.get("/correlations/{correlation_id}", response_model=CorrelationResponse)
async def get_correlation(
    correlation_id: str,
    db: AsyncSession = Depends(get_db),
    services: TrackingServices = Depends(get_services)
):
    """Events seen so far for a correlation id, oldest first"""
    group = await services.correlation.timeline(db, correlation_id)
    if not group.events:
        raise HTTPException(status_code=404, detail=f"No events for correlation id '{correlation_id}'")

    return CorrelationResponse(
        correlation_id=group.correlation_id,
        systems=sorted(group.systems),
        first_seen_at=group.first_seen_at,
        last_seen_at=group.last_seen_at,
        events=[
            TimelineEvent(
                event_id=event.event_id,
                source_system=event.source_system,
                event_type=event.event_type,
                occurred_at=event.occurred_at,
                received_at=event.received_at,
                payload=event.payload
            )
            for event in group.events
        ]
    )
