"""
Correlation store: cross-system timelines keyed by a correlation id.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Set
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.correlation import CorrelationLink
from models.event import CanonicalEventRecord
from schemas.events import CanonicalEvent
from tracking.locks import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass
class CorrelationGroup:
    """Events sharing one correlation id, ordered by occurred_at"""
    correlation_id: str
    events: List[CanonicalEvent] = field(default_factory=list)

    @property
    def systems(self) -> Set[str]:
        return {event.source_system for event in self.events}

    @property
    def first_seen_at(self):
        return self.events[0].occurred_at if self.events else None

    @property
    def last_seen_at(self):
        return self.events[-1].occurred_at if self.events else None


class CorrelationStore:
    """
    Append-only index from correlation id to canonical events.

    Ordering is by the source-reported occurred_at, then by arrival, since
    source clocks are not synchronized.
    """

    def __init__(self, locks: Optional[KeyedLocks] = None):
        self.locks = locks or KeyedLocks()

    async def record(self, session: AsyncSession, record: CanonicalEventRecord) -> bool:
        """
        Link a persisted event to its correlation group.

        Returns:
            True if a new link was added; False if the event has no
            correlation id or is already linked
        """
        if not record.correlation_id:
            return False

        async with self.locks.hold(record.correlation_id):
            existing = await session.execute(
                select(CorrelationLink.seq).where(
                    CorrelationLink.correlation_id == record.correlation_id,
                    CorrelationLink.event_id == record.id
                )
            )
            if existing.scalar_one_or_none() is not None:
                return False

            session.add(CorrelationLink(
                correlation_id=record.correlation_id,
                event_id=record.id,
                source_system=record.source_system,
                event_type=record.event_type,
                occurred_at=record.occurred_at,
            ))
            await session.flush()

        logger.debug(f"Correlated {record.source_system}/{record.event_type} with {record.correlation_id}")
        return True

    async def events_for(self, session: AsyncSession, correlation_id: str) -> List[CanonicalEvent]:
        """Events seen so far for ``correlation_id``"""
        result = await session.execute(
            select(CanonicalEventRecord)
            .join(CorrelationLink, CorrelationLink.event_id == CanonicalEventRecord.id)
            .where(CorrelationLink.correlation_id == correlation_id)
            .order_by(CorrelationLink.occurred_at, CorrelationLink.seq)
        )
        return [CanonicalEvent.from_record(r) for r in result.scalars().all()]

    async def timeline(self, session: AsyncSession, correlation_id: str) -> CorrelationGroup:
        return CorrelationGroup(
            correlation_id=correlation_id,
            events=await self.events_for(session, correlation_id),
        )
