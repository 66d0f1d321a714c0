"""
Pydantic schemas for data validation and serialization.

Schemas:
    events: Inbound payload variants, the schema registry and the
        CanonicalEvent envelope
    api: API endpoint request/response schemas

Usage:
    from schemas.events import EVENT_SCHEMAS, CanonicalEvent
    from schemas.api import HealthCheckResponse, WebhookAccepted

Validation:
    Payload schemas validate required fields, coarse types, enum values
    and timestamps; unknown extra fields are kept in the payload.
"""

__all__ = [
    "EVENT_SCHEMAS",
    "EventSchema",
    "CanonicalEvent",
    "WebhookAccepted",
    "ErrorResponse",
    "HealthCheckResponse",
    "StatsResponse",
    "DeadLetterResponse",
    "CorrelationResponse",
]
