"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime


# ============================================================================
# Webhook Schemas
# ============================================================================

class WebhookAccepted(BaseModel):
    """Response for an accepted webhook"""
    success: bool = True
    eventId: str
    duplicate: bool = False

    class Config:
        json_schema_extra = {
            "example": {"success": True, "eventId": "evt_123", "duplicate": False}
        }


class ErrorResponse(BaseModel):
    """Response for a rejected webhook"""
    error: str = Field(..., description="Machine-readable error code")
    message: str
    fields: Optional[List[str]] = None

    class Config:
        json_schema_extra = {
            "example": {
                "error": "malformed_event",
                "message": "Invalid order/created payload",
                "fields": ["amount"]
            }
        }


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    analytics_store_reachable: bool
    notification_channels: Dict[str, bool] = Field(default_factory=dict)
    task_counts: Dict[str, int] = Field(default_factory=dict)
    workers_running: bool = False
    scheduler_running: bool = False
    # Declared last so the validator sees every other field
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"

        if not values.get("analytics_store_reachable", False):
            return "degraded"

        channels = values.get("notification_channels") or {}
        if channels and not any(channels.values()):
            return "degraded"

        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "analytics_store_reachable": True,
                "notification_channels": {"email": True, "pager": True},
                "task_counts": {"pending": 3, "in_flight": 1, "delivered": 1200, "failed": 0, "dead_lettered": 2},
                "workers_running": True,
                "scheduler_running": True
            }
        }


# ============================================================================
# Statistics Schemas
# ============================================================================

class ScheduleRunSummary(BaseModel):
    """Summary of one scheduler run"""
    tier: str
    slot: str
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    records_processed: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class TierStateInfo(BaseModel):
    """Persisted state of one tier"""
    tier: str
    last_slot: Optional[str] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    total_runs: int = 0


class StatsResponse(BaseModel):
    """Queue and scheduler statistics"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    task_counts: Dict[str, int]
    remaining_quota: int
    consecutive_delivery_failures: int = 0
    tiers: List[TierStateInfo] = Field(default_factory=list)
    recent_runs: List[ScheduleRunSummary] = Field(default_factory=list)
    pending_alerts: int = 0
    request_id: Optional[str] = None


class DeadLetterInfo(BaseModel):
    """A dead-lettered delivery task"""
    task_id: str
    target_resource: str
    logical_key: Optional[str] = None
    idempotency_key: str
    attempt: int
    last_error: Optional[str] = None
    occurred_at: datetime
    updated_at: datetime


class DeadLetterResponse(BaseModel):
    total: int
    dead_letters: List[DeadLetterInfo]


# ============================================================================
# Correlation Schemas
# ============================================================================

class TimelineEvent(BaseModel):
    event_id: str
    source_system: str
    event_type: str
    occurred_at: datetime
    received_at: datetime
    payload: Dict[str, Any]


class CorrelationResponse(BaseModel):
    """Cross-system timeline for one correlation id"""
    correlation_id: str
    systems: List[str]
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    events: List[TimelineEvent]
