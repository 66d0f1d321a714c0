"""
Pydantic schemas for inbound event payloads and the canonical event envelope.

Each (source_system, event_type) pair has exactly one payload model and one
EventSchema entry describing where the event is delivered and how its store
row is built.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Type

from pydantic import AfterValidator, BaseModel, Field


def to_naive_utc(value: datetime) -> datetime:
    """Store every timestamp as naive UTC"""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


UTCDateTime = Annotated[datetime, AfterValidator(to_naive_utc)]

OrderStatus = Literal[
    "pending", "confirmed", "processing", "shipped", "out_for_delivery",
    "delivered", "cancelled", "refunded", "returned",
]
ShippingStatus = Literal["in_transit", "out_for_delivery", "delivered", "exception"]
TicketPriority = Literal["low", "medium", "high", "urgent"]
TicketStatus = Literal["open", "in_progress", "waiting_customer", "resolved", "closed"]
MovementType = Literal["in", "out", "adjustment", "return"]


# ============================================================================
# Payload variants
# ============================================================================

class EventPayload(BaseModel):
    """Fields every provider may send"""
    event_id: Optional[str] = Field(None, alias="eventId")
    correlation_id: Optional[str] = Field(None, alias="correlationId")
    occurred_at: Optional[UTCDateTime] = Field(None, alias="occurredAt")

    class Config:
        populate_by_name = True
        extra = "allow"


class OrderPayload(EventPayload):
    order_id: str = Field(..., min_length=1, alias="orderId")
    customer_id: str = Field(..., min_length=1, alias="customerId")
    status: OrderStatus
    amount: float = Field(..., ge=0)
    currency: str = "USD"
    customer_email: Optional[str] = Field(None, alias="customerEmail")
    item_count: Optional[int] = Field(None, ge=0, alias="itemCount")


class OrderShippedPayload(EventPayload):
    order_id: str = Field(..., min_length=1, alias="orderId")
    tracking_number: str = Field(..., min_length=1, alias="trackingNumber")
    carrier: Optional[str] = None


class OrderDeliveredPayload(EventPayload):
    order_id: str = Field(..., min_length=1, alias="orderId")
    delivered_at: Optional[UTCDateTime] = Field(None, alias="deliveredAt")


class PaymentPayload(EventPayload):
    payment_id: str = Field(..., min_length=1, alias="paymentId")
    order_id: str = Field(..., min_length=1, alias="orderId")
    amount: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = None


class ShippingPayload(EventPayload):
    order_id: str = Field(..., min_length=1, alias="orderId")
    tracking_number: str = Field(..., min_length=1, alias="trackingNumber")
    status: ShippingStatus
    carrier: Optional[str] = None
    status_description: Optional[str] = Field(None, alias="statusDescription")
    delay_days: Optional[int] = Field(None, ge=0, alias="delayDays")


class TicketCreatedPayload(EventPayload):
    ticket_id: str = Field(..., min_length=1, alias="ticketId")
    customer_id: str = Field(..., min_length=1, alias="customerId")
    subject: str = Field(..., min_length=1)
    priority: TicketPriority
    category: Optional[str] = None
    order_id: Optional[str] = Field(None, alias="orderId")


class TicketUpdatedPayload(EventPayload):
    ticket_id: str = Field(..., min_length=1, alias="ticketId")
    status: TicketStatus
    assigned_to: Optional[str] = Field(None, alias="assignedTo")
    updated_by: Optional[str] = Field(None, alias="updatedBy")


class SatisfactionScorePayload(EventPayload):
    ticket_id: str = Field(..., min_length=1, alias="ticketId")
    score: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = None


class StockMovementPayload(EventPayload):
    product_id: str = Field(..., min_length=1, alias="productId")
    sku: str = Field(..., min_length=1)
    movement_type: MovementType = Field(..., alias="movementType")
    quantity: int
    reason: Optional[str] = None
    order_id: Optional[str] = Field(None, alias="orderId")
    supplier: Optional[str] = None
    cost_impact: Optional[float] = Field(None, alias="costImpact")


class ProductPayload(EventPayload):
    product_id: str = Field(..., min_length=1, alias="productId")
    sku: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    current_stock: int = Field(..., alias="currentStock")
    low_stock_threshold: int = Field(10, ge=0, alias="lowStockThreshold")
    supplier: Optional[str] = None


class LowStockPayload(EventPayload):
    product_id: str = Field(..., min_length=1, alias="productId")
    product_name: str = Field(..., min_length=1, alias="productName")
    sku: str = Field(..., min_length=1)
    current_stock: int = Field(..., alias="currentStock")
    threshold: int = Field(..., ge=0)


class UserActivityPayload(EventPayload):
    user_id: str = Field(..., min_length=1, alias="userId")
    session_id: str = Field(..., min_length=1, alias="sessionId")
    timestamp: Optional[UTCDateTime] = None
    page: Optional[str] = None
    product_id: Optional[str] = Field(None, alias="productId")
    search_query: Optional[str] = Field(None, alias="searchQuery")
    order_id: Optional[str] = Field(None, alias="orderId")
    value: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = None


class OrderSnapshotPayload(OrderPayload):
    updated_at: Optional[UTCDateTime] = Field(None, alias="updatedAt")


class ProductSnapshotPayload(ProductPayload):
    updated_at: Optional[UTCDateTime] = Field(None, alias="updatedAt")


# ============================================================================
# Schema registry
# ============================================================================

@dataclass(frozen=True)
class EventSchema:
    """
    Declaration for one (source_system, event_type) variant.

    Attributes:
        model: Pydantic payload model used for validation
        target: Store resource as "<spreadsheet alias>/<sheet name>"
        columns: Payload fields (wire names) written to the store row
        key_field: Payload field holding the logical key; None for
            append-only resources
        timestamp_field: Payload field holding the source timestamp
        correlation_field: Payload field used as default correlation id
    """
    source_system: str
    event_type: str
    model: Type[EventPayload]
    target: str
    columns: Tuple[str, ...]
    key_field: Optional[str] = None
    timestamp_field: str = "occurredAt"
    correlation_field: Optional[str] = "orderId"
    fixed_values: Dict[str, Any] = field(default_factory=dict)


ORDER_COLUMNS = ("orderId", "customerId", "status", "amount", "currency", "customerEmail", "itemCount")
STATUS_COLUMNS = ("orderId", "status", "trackingNumber", "carrier", "statusDescription", "delayDays", "deliveredAt")
PRODUCT_COLUMNS = ("productId", "sku", "name", "currentStock", "lowStockThreshold", "supplier")
ACTIVITY_COLUMNS = ("userId", "sessionId", "page", "productId", "searchQuery", "orderId", "value", "currency")
TICKET_ACTIVITY_COLUMNS = ("ticketId", "status", "assignedTo", "updatedBy", "score", "feedback")
MOVEMENT_COLUMNS = (
    "productId", "sku", "movementType", "quantity", "reason", "orderId",
    "supplier", "costImpact", "currentStock", "threshold",
)

USER_ACTIVITY_TYPES = (
    "page_view", "product_view", "search", "add_to_cart",
    "checkout_started", "purchase", "sign_up",
)


def _build_registry() -> Dict[Tuple[str, str], EventSchema]:
    schemas: List[EventSchema] = [
        EventSchema("order", "created", OrderPayload, "orders/Orders", ORDER_COLUMNS, key_field="orderId"),
        EventSchema("order", "updated", OrderPayload, "orders/Orders", ORDER_COLUMNS, key_field="orderId"),
        EventSchema("order", "shipped", OrderShippedPayload, "orders/Order Status", STATUS_COLUMNS,
                    key_field="orderId", fixed_values={"status": "shipped"}),
        EventSchema("order", "delivered", OrderDeliveredPayload, "orders/Order Status", STATUS_COLUMNS,
                    key_field="orderId", fixed_values={"status": "delivered"}),
        EventSchema("shipping", "tracking_update", ShippingPayload, "orders/Order Status", STATUS_COLUMNS,
                    key_field="orderId"),
        EventSchema("support", "ticket_created", TicketCreatedPayload, "support/Tickets",
                    ("ticketId", "customerId", "subject", "priority", "category", "orderId"),
                    key_field="ticketId"),
        EventSchema("support", "ticket_updated", TicketUpdatedPayload, "support/Ticket Activity",
                    TICKET_ACTIVITY_COLUMNS, correlation_field=None),
        EventSchema("support", "satisfaction_score", SatisfactionScorePayload, "support/Ticket Activity",
                    TICKET_ACTIVITY_COLUMNS, correlation_field=None),
        EventSchema("inventory", "stock_movement", StockMovementPayload, "inventory/Stock Movements",
                    MOVEMENT_COLUMNS),
        EventSchema("inventory", "low_stock_alert", LowStockPayload, "inventory/Stock Movements",
                    MOVEMENT_COLUMNS, correlation_field=None),
        EventSchema("inventory", "product_updated", ProductPayload, "inventory/Inventory", PRODUCT_COLUMNS,
                    key_field="productId", correlation_field=None),
        EventSchema("commerce", "order_snapshot", OrderSnapshotPayload, "orders/Orders", ORDER_COLUMNS,
                    key_field="orderId", timestamp_field="updatedAt"),
        EventSchema("commerce", "product_snapshot", ProductSnapshotPayload, "inventory/Inventory",
                    PRODUCT_COLUMNS, key_field="productId", timestamp_field="updatedAt",
                    correlation_field=None),
    ]
    for action in ("payment_completed", "payment_failed", "refund_processed"):
        schemas.append(EventSchema(
            "payment", action, PaymentPayload, "orders/Payments",
            ("paymentId", "orderId", "amount", "currency"),
        ))
    for activity in USER_ACTIVITY_TYPES:
        schemas.append(EventSchema(
            "user_activity", activity, UserActivityPayload, "analytics/User Activity",
            ACTIVITY_COLUMNS, timestamp_field="timestamp",
        ))
    return {(s.source_system, s.event_type): s for s in schemas}


EVENT_SCHEMAS: Dict[Tuple[str, str], EventSchema] = _build_registry()


# ============================================================================
# Canonical envelope
# ============================================================================

class CanonicalEvent(BaseModel):
    """
    Normalized, schema-validated representation of an inbound payload.

    Immutable once created by the normalizer.
    """
    event_id: str
    correlation_id: Optional[str] = None
    source_system: str
    event_type: str
    occurred_at: datetime
    received_at: datetime
    payload: Dict[str, Any]
    signature_valid: bool = False

    class Config:
        frozen = True

    @property
    def idempotency_key(self) -> str:
        return f"{self.source_system}:{self.event_type}:{self.event_id}"

    @classmethod
    def from_record(cls, record) -> "CanonicalEvent":
        return cls(
            event_id=record.event_id,
            correlation_id=record.correlation_id,
            source_system=record.source_system,
            event_type=record.event_type,
            occurred_at=record.occurred_at,
            received_at=record.received_at,
            payload=record.payload,
            signature_valid=record.signature_valid,
        )
