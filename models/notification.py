from sqlalchemy import Column, String, Enum, DateTime, Integer, Text, Index
from datetime import datetime
import uuid
from models.base import Base, JSONType, AlertStatus, Severity


def _new_id() -> str:
    return uuid.uuid4().hex


class NotificationAlert(Base):
    """
    Aggregation bucket for one (alert_type, message_template).

    A pending bucket is mutated in place while its window is open; flushing
    freezes it as sent or failed. A later alert of the same kind opens a
    new bucket.
    """
    __tablename__ = "notification_alerts"

    id = Column(String(32), primary_key=True, default=_new_id)
    alert_type = Column(String(100), nullable=False)
    message_template = Column(String(500), nullable=False)
    severity = Column(Enum(Severity), nullable=False)
    message = Column(Text, nullable=False)  # latest concrete message

    first_seen_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_seen_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    occurrence_count = Column(Integer, nullable=False, default=1)

    channels = Column(JSONType, nullable=False, default=list)
    channel_results = Column(JSONType, nullable=True)
    status = Column(Enum(AlertStatus), nullable=False, default=AlertStatus.PENDING, index=True)
    dispatched_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_alert_bucket", "alert_type", "message_template", "status"),
    )
