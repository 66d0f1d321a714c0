from sqlalchemy import Column, String, Enum, DateTime, Integer, Float, Index
from datetime import datetime
from models.base import Base, BigIntPK, JSONType, RunStatus, Tier


class ScheduleRun(Base):
    """
    Audit trail of scheduler invocations, one row per tier run.
    """
    __tablename__ = "schedule_runs"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tier = Column(Enum(Tier), nullable=False, index=True)
    slot = Column(String(32), nullable=False)

    status = Column(Enum(RunStatus), nullable=False, default=RunStatus.RUNNING)
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    finished_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    records_processed = Column(Integer, default=0)
    errors = Column(JSONType, nullable=False, default=list)

    __table_args__ = (
        Index("idx_schedule_run_tier_started", "tier", "started_at"),
    )


class TierState(Base):
    """
    Last-run state per tier, persisted so restarts neither repeat nor skip
    a slot.
    """
    __tablename__ = "tier_states"

    tier = Column(Enum(Tier), primary_key=True)
    last_slot = Column(String(32), nullable=True)
    last_started_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)
    total_runs = Column(Integer, default=0)


class SourceCheckpoint(Base):
    """
    Tracks incremental reconciliation state per commerce resource.

    Purpose:
    - Resume reconciliation from the last successful watermark
    - Avoid re-fetching records already seen

    Design:
    - One row per resource ("orders", "products")
    - cursor stores the max updatedAt seen (ISO timestamp)
    """
    __tablename__ = "source_checkpoints"

    resource = Column(String(50), primary_key=True)
    cursor = Column(String(64), nullable=True)
    status = Column(Enum(RunStatus), nullable=False, default=RunStatus.SUCCESS)
    last_run_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    total_records_processed = Column(Integer, default=0)
    last_records_processed = Column(Integer, default=0)
    error_message = Column(String(1000), nullable=True)
