"""
Ingestion pipeline: verify -> parse -> normalize -> persist -> correlate ->
enqueue delivery.

Errors raised before persistence (InvalidSignature, MalformedEvent,
UnknownEventType) are surfaced to the caller; nothing after acceptance is.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple
import json
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.exceptions import InvalidSignature, MalformedEvent, UnknownEventType
from models.event import CanonicalEventRecord
from schemas.events import CanonicalEvent
from tracking.correlation import CorrelationStore
from tracking.normalizer import CHANNELS, EventNormalizer
from tracking.sync_engine import SyncEngine
from tracking.verifier import SignatureVerifier

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    event: CanonicalEvent
    duplicate: bool
    task_id: Optional[str] = None

    @property
    def event_id(self) -> str:
        return self.event.event_id


class IngestionPipeline:
    """Accepts webhook bodies and reconciliation snapshots"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        verifier: SignatureVerifier,
        normalizer: EventNormalizer,
        correlation: CorrelationStore,
        engine: SyncEngine,
        aggregator=None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.session_factory = session_factory
        self.verifier = verifier
        self.normalizer = normalizer
        self.correlation = correlation
        self.engine = engine
        self.aggregator = aggregator
        self.clock = clock

    @staticmethod
    def knows_channel(channel: str) -> bool:
        return channel in CHANNELS

    async def handle_webhook(
        self,
        channel: str,
        body: bytes,
        signature: Optional[str] = None,
        correlation_id: Optional[str] = None
    ) -> IngestResult:
        """
        Process one inbound webhook body.

        Raises:
            UnknownEventType: Unknown channel or event type
            InvalidSignature: Signature missing or wrong
            MalformedEvent: Body is not a valid payload for its event type
        """
        if not self.knows_channel(channel):
            raise UnknownEventType(f"Unknown webhook channel '{channel}'", context={"channel": channel})

        if not self.verifier.verify(channel, body, signature):
            logger.warning(
                f"SECURITY: rejected {channel} webhook with invalid signature "
                f"(header {'present' if signature else 'missing'}, {len(body)} bytes)"
            )
            raise InvalidSignature(
                "Invalid webhook signature",
                context={"channel": channel, "signature_present": bool(signature)}
            )

        try:
            raw = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedEvent("Request body is not valid JSON", fields=[], context={"channel": channel}, original_exception=e)
        if not isinstance(raw, dict):
            raise MalformedEvent("Request body must be a JSON object", fields=[], context={"channel": channel})

        try:
            source_system, event_type = self.normalizer.resolve_channel(channel, raw)
            event = self.normalizer.normalize(
                source_system,
                event_type,
                raw,
                correlation_id=correlation_id,
                signature_valid=self.verifier.requires_signature(channel),
                received_at=self.clock()
            )
        except UnknownEventType as e:
            logger.warning(f"Rejected {channel} webhook: {e.message}", extra={"error_context": e.to_dict()})
            raise

        result = await self.accept(event)
        if not result.duplicate:
            try:
                await self._side_alerts(event)
            except Exception:
                logger.exception(f"Failed to record alert for {event.idempotency_key}")
        return result

    async def ingest(
        self,
        source_system: str,
        event_type: str,
        payload: Dict[str, Any],
        correlation_id: Optional[str] = None
    ) -> IngestResult:
        """Normalize and accept an event that did not arrive by webhook"""
        event = self.normalizer.normalize(
            source_system, event_type, payload, correlation_id=correlation_id, received_at=self.clock()
        )
        return await self.accept(event)

    async def accept(self, event: CanonicalEvent) -> IngestResult:
        """Persist, correlate and enqueue a canonical event; idempotent"""
        async with self.session_factory() as session:
            # Delivered long ago and cleaned up
            tombstone = await self.engine.tombstone_for(session, event.idempotency_key)
            if tombstone is not None:
                logger.info(f"Duplicate {event.idempotency_key} ignored (delivered before cleanup)")
                return IngestResult(event=event, duplicate=True, task_id=tombstone.id)

            record, duplicate = await self._persist(session, event)
            await self.correlation.record(session, record)
            task = await self.engine.submit(session, record, event)

        if duplicate:
            logger.info(f"Duplicate {event.idempotency_key} ignored")
        else:
            logger.info(f"Accepted {event.idempotency_key} -> {task.target_resource}")
        return IngestResult(event=event, duplicate=duplicate, task_id=task.id)

    async def _find(self, session: AsyncSession, event: CanonicalEvent) -> Optional[CanonicalEventRecord]:
        result = await session.execute(
            select(CanonicalEventRecord).where(
                CanonicalEventRecord.source_system == event.source_system,
                CanonicalEventRecord.event_type == event.event_type,
                CanonicalEventRecord.event_id == event.event_id
            )
        )
        return result.scalar_one_or_none()

    async def _persist(self, session: AsyncSession, event: CanonicalEvent) -> Tuple[CanonicalEventRecord, bool]:
        existing = await self._find(session, event)
        if existing is not None:
            return existing, True

        record = CanonicalEventRecord(
            event_id=event.event_id,
            correlation_id=event.correlation_id,
            source_system=event.source_system,
            event_type=event.event_type,
            occurred_at=event.occurred_at,
            received_at=event.received_at,
            payload=event.payload,
            signature_valid=event.signature_valid,
        )
        session.add(record)
        try:
            await session.flush()
        except IntegrityError:
            # Same event accepted concurrently by another request
            await session.rollback()
            existing = await self._find(session, event)
            if existing is None:
                raise
            return existing, True
        return record, False

    async def _side_alerts(self, event: CanonicalEvent):
        if self.aggregator is None:
            return
        payload = event.payload
        key = (event.source_system, event.event_type)

        if key == ("shipping", "tracking_update"):
            delay = payload.get("delayDays") or 0
            if payload.get("status") == "exception" or delay > 0:
                reason = payload.get("statusDescription") or payload.get("status")
                await self.aggregator.record(
                    "order_delayed", "medium",
                    f"Order {payload.get('orderId')} delayed ({reason}), tracking {payload.get('trackingNumber')}"
                )
        elif key == ("support", "ticket_created") and payload.get("priority") == "urgent":
            await self.aggregator.record(
                "support_urgent", "high",
                f"Urgent ticket {payload.get('ticketId')}: {payload.get('subject')}"
            )
        elif key == ("inventory", "low_stock_alert"):
            await self.aggregator.record(
                "inventory_low", "medium",
                f"Low stock for {payload.get('productName')} ({payload.get('sku')}): "
                f"{payload.get('currentStock')} left, threshold {payload.get('threshold')}"
            )
