from sqlalchemy import Column, String, DateTime, Boolean, Index
from datetime import datetime
from models.base import Base, BigIntPK, JSONType


class CanonicalEventRecord(Base):
    """
    Accepted, normalized webhook or reconciliation event.

    Purpose:
    - Immutable audit trail of everything the service accepted
    - Source data for the scheduled aggregates and reports
    - Retained until delivered and past the retention window

    Design:
    - (source_system, event_type, event_id) is unique, which makes re-sent
      webhooks collapse onto one row
    """
    __tablename__ = "canonical_events"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    event_id = Column(String(128), nullable=False)
    correlation_id = Column(String(255), nullable=True, index=True)
    source_system = Column(String(50), nullable=False, index=True)
    event_type = Column(String(50), nullable=False, index=True)

    occurred_at = Column(DateTime, nullable=False, index=True)
    received_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    payload = Column(JSONType, nullable=False)
    signature_valid = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_event_identity", "source_system", "event_type", "event_id", unique=True),
        Index("idx_event_source_occurred", "source_system", "occurred_at"),
    )
