"""
Transform raw provider payloads into canonical events with Pydantic validation
"""

from typing import Any, Dict, List, Mapping, Optional, Tuple
from datetime import datetime
import hashlib
import json
import logging

from pydantic import ValidationError

from core.exceptions import MalformedEvent, UnknownEventType
from schemas.events import EVENT_SCHEMAS, CanonicalEvent, EventSchema

logger = logging.getLogger(__name__)

# Webhook channel -> (source system, discriminator field, default event type)
CHANNELS: Dict[str, Tuple[str, Optional[str], Optional[str]]] = {
    "order": ("order", "action", None),
    "payment": ("payment", "action", None),
    "shipping": ("shipping", "event", "tracking_update"),
    "support": ("support", "action", None),
    "inventory": ("inventory", "action", None),
    "user": ("user_activity", "type", None),
}


def content_hash(payload: Mapping[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of a payload"""
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _stringify(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    return value


class EventNormalizer:
    """
    Normalize heterogeneous provider payloads into CanonicalEvent.

    Handles:
    - Schema lookup per (source_system, event_type)
    - Coarse type validation (string/number/date/enum)
    - Timestamp extraction with receipt-time fallback
    - Deterministic event ids for payloads without one
    """

    def __init__(self, schemas: Optional[Dict[Tuple[str, str], EventSchema]] = None):
        self.schemas = schemas if schemas is not None else EVENT_SCHEMAS

    def schema_for(self, source_system: str, event_type: str) -> EventSchema:
        schema = self.schemas.get((source_system, event_type))
        if schema is None:
            raise UnknownEventType(
                f"No schema declared for {source_system}/{event_type}",
                context={"source_system": source_system, "event_type": event_type}
            )
        return schema

    def resolve_channel(self, channel: str, raw_payload: Mapping[str, Any]) -> Tuple[str, str]:
        """
        Determine (source_system, event_type) for a webhook channel.

        Raises:
            UnknownEventType: Unknown channel or missing discriminator
        """
        if channel not in CHANNELS:
            raise UnknownEventType(
                f"Unknown webhook channel '{channel}'",
                context={"channel": channel}
            )
        source_system, discriminator, default_type = CHANNELS[channel]
        event_type = raw_payload.get(discriminator) if discriminator else None
        event_type = event_type or default_type
        if not isinstance(event_type, str) or not event_type:
            raise UnknownEventType(
                f"Payload for '{channel}' has no '{discriminator}' field",
                context={"channel": channel, "discriminator": discriminator}
            )
        return source_system, event_type

    def normalize(
        self,
        source_system: str,
        event_type: str,
        raw_payload: Any,
        correlation_id: Optional[str] = None,
        signature_valid: bool = False,
        received_at: Optional[datetime] = None
    ) -> CanonicalEvent:
        """
        Validate a raw payload and build the canonical event.

        Raises:
            UnknownEventType: No schema for the pair
            MalformedEvent: Missing or invalid fields
        """
        schema = self.schema_for(source_system, event_type)
        received_at = received_at or datetime.utcnow()

        if not isinstance(raw_payload, Mapping):
            raise MalformedEvent(
                "Payload must be a JSON object",
                fields=[],
                context={"source_system": source_system, "event_type": event_type}
            )

        try:
            model = schema.model.model_validate(dict(raw_payload))
        except ValidationError as e:
            fields = sorted({
                ".".join(str(part) for part in error["loc"]) or "payload"
                for error in e.errors()
            })
            logger.info(f"Rejected {source_system}/{event_type}: invalid fields {fields}")
            raise MalformedEvent(
                f"Invalid {source_system}/{event_type} payload",
                fields=fields,
                context={"source_system": source_system, "event_type": event_type},
                original_exception=e
            )

        payload = model.model_dump(mode="json", by_alias=True, exclude_none=True)

        occurred_at = getattr(model, _attribute_for(schema.model, schema.timestamp_field), None)
        occurred_at = occurred_at or received_at

        event_id = model.event_id or content_hash(raw_payload)
        correlation_id = (
            correlation_id
            or model.correlation_id
            or (payload.get(schema.correlation_field) if schema.correlation_field else None)
        )

        return CanonicalEvent(
            event_id=str(event_id),
            correlation_id=str(correlation_id) if correlation_id else None,
            source_system=source_system,
            event_type=event_type,
            occurred_at=occurred_at,
            received_at=received_at,
            payload=payload,
            signature_valid=signature_valid,
        )


def _attribute_for(model, wire_name: str) -> str:
    """Map a wire (alias) name back to the model attribute name"""
    for name, info in model.model_fields.items():
        if info.alias == wire_name or name == wire_name:
            return name
    return wire_name


def logical_key_for(schema: EventSchema, event: CanonicalEvent) -> Optional[str]:
    """Logical record key, e.g. ``orders/Orders#ORD-1``; None if append-only"""
    if not schema.key_field:
        return None
    value = event.payload.get(schema.key_field)
    if value in (None, ""):
        return None
    return f"{schema.target}#{value}"


def build_row(schema: EventSchema, event: CanonicalEvent, row_key: str) -> List[Any]:
    """
    Render the store row for an event.

    Layout: row key, declared columns, source system, event type,
    occurred_at, idempotency key.
    """
    values = dict(event.payload)
    values.update(schema.fixed_values)
    row = [row_key]
    row.extend(_stringify(values.get(column)) for column in schema.columns)
    row.extend([
        event.source_system,
        event.event_type,
        event.occurred_at.isoformat(),
        event.idempotency_key,
    ])
    return row
