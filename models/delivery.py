from sqlalchemy import Column, String, Enum, DateTime, Integer, Text, Index, ForeignKey
from datetime import datetime
import uuid
from models.base import Base, BigIntPK, JSONType, TaskStatus


def _new_id() -> str:
    return uuid.uuid4().hex


class DeliveryTask(Base):
    """
    One pending write of a canonical event into the analytics store.

    Lifecycle:
        pending -> in_flight -> delivered
                             -> pending (attempt += 1, backoff)
                             -> dead_lettered

    Design:
    - idempotency_key is unique: one task per accepted event
    - row_key is what the store upsert is keyed on (logical key when the
      event schema declares one, idempotency key otherwise)
    - row_values is the fully rendered store row, so delivery never needs
      to re-read the event
    """
    __tablename__ = "delivery_tasks"

    id = Column(String(32), primary_key=True, default=_new_id)
    event_id = Column(BigIntPK, ForeignKey("canonical_events.id"), nullable=False, index=True)

    target_resource = Column(String(200), nullable=False, index=True)
    logical_key = Column(String(255), nullable=True, index=True)
    idempotency_key = Column(String(400), nullable=False, unique=True)
    row_key = Column(String(400), nullable=False)
    row_values = Column(JSONType, nullable=False)

    # Ordering data for last-write-wins
    occurred_at = Column(DateTime, nullable=False)
    source_system = Column(String(50), nullable=False)
    source_event_id = Column(String(128), nullable=False)

    status = Column(Enum(TaskStatus), default=TaskStatus.PENDING, nullable=False, index=True)
    attempt = Column(Integer, default=0, nullable=False)
    next_attempt_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    claimed_by = Column(String(64), nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    superseded_by = Column(String(32), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    delivered_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_task_due", "status", "next_attempt_at"),
        Index("idx_task_logical", "logical_key", "status"),
    )

    @property
    def ordering(self):
        """Total order used by last-write-wins"""
        return (self.occurred_at, self.source_system, self.source_event_id, self.idempotency_key)


class ConflictRecord(Base):
    """
    Audit entry for two deliveries that targeted the same logical key.

    candidates holds every competing value with its source system,
    occurred_at and event id; resolution is the winning row.
    """
    __tablename__ = "conflict_records"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    logical_key = Column(String(255), nullable=False, index=True)
    target_resource = Column(String(200), nullable=False)
    candidates = Column(JSONType, nullable=False)
    resolution = Column(JSONType, nullable=False)
    winner_task_id = Column(String(32), nullable=False)
    strategy = Column(String(50), nullable=False, default="last-write-wins")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)


class DeliveryTombstone(Base):
    """
    What remains of a delivered task after retention cleanup.

    Keeps the idempotency key, so a re-sent event is still a duplicate,
    and the last-write-wins ordering and row, so an older write for the
    same logical key still loses. ``id`` is the original task id.
    """
    __tablename__ = "delivery_tombstones"

    id = Column(String(32), primary_key=True)
    idempotency_key = Column(String(400), nullable=False, unique=True)
    target_resource = Column(String(200), nullable=False)
    logical_key = Column(String(255), nullable=True, index=True)
    row_values = Column(JSONType, nullable=False)

    occurred_at = Column(DateTime, nullable=False)
    source_system = Column(String(50), nullable=False)
    source_event_id = Column(String(128), nullable=False)

    delivered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Stands in for a delivered task among last-write-wins rivals
    status = TaskStatus.DELIVERED

    @classmethod
    def from_task(cls, task: DeliveryTask, now: datetime) -> "DeliveryTombstone":
        return cls(
            id=task.id,
            idempotency_key=task.idempotency_key,
            target_resource=task.target_resource,
            logical_key=task.logical_key,
            row_values=task.row_values,
            occurred_at=task.occurred_at,
            source_system=task.source_system,
            source_event_id=task.source_event_id,
            delivered_at=task.delivered_at,
            created_at=now,
        )

    @property
    def ordering(self):
        return (self.occurred_at, self.source_system, self.source_event_id, self.idempotency_key)
