from sqlalchemy import Column, String, DateTime, Index, ForeignKey
from models.base import Base, BigIntPK


class CorrelationLink(Base):
    """
    Append-only index entry tying a canonical event to a correlation id.

    A correlation group is the ordered set of links for one correlation_id;
    its set of source systems is derived on read.
    """
    __tablename__ = "correlation_links"

    seq = Column(BigIntPK, primary_key=True, autoincrement=True)
    correlation_id = Column(String(255), nullable=False)
    event_id = Column(BigIntPK, ForeignKey("canonical_events.id"), nullable=False)
    source_system = Column(String(50), nullable=False)
    event_type = Column(String(50), nullable=False)
    occurred_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_correlation_timeline", "correlation_id", "occurred_at", "seq"),
        Index("idx_correlation_event", "correlation_id", "event_id", unique=True),
    )
