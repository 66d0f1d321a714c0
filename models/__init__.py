"""
SQLAlchemy ORM models for the tracking service.

Models:
    base: Declarative base, portable column types and shared enums
    event: Accepted canonical events
    delivery: Delivery tasks, conflict audit records and retention tombstones
    correlation: Correlation index links
    notification: Alert aggregation buckets
    schedule: Scheduler runs, tier state and reconciliation checkpoints

Relationships:
    - CanonicalEventRecord -> DeliveryTask (one-to-one, via idempotency key)
    - CanonicalEventRecord -> CorrelationLink (zero-or-one)
"""

from models.base import Base, TaskStatus, Severity, AlertStatus, Tier, RunStatus
from models.event import CanonicalEventRecord
from models.delivery import DeliveryTask, ConflictRecord, DeliveryTombstone
from models.correlation import CorrelationLink
from models.notification import NotificationAlert
from models.schedule import ScheduleRun, TierState, SourceCheckpoint

__all__ = [
    "Base",
    "TaskStatus",
    "Severity",
    "AlertStatus",
    "Tier",
    "RunStatus",
    "CanonicalEventRecord",
    "DeliveryTask",
    "ConflictRecord",
    "DeliveryTombstone",
    "CorrelationLink",
    "NotificationAlert",
    "ScheduleRun",
    "TierState",
    "SourceCheckpoint",
]
