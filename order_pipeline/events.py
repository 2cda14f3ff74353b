"""
Order Pipeline — event definitions

Every message on the queue is an Envelope: a self-describing wrapper
around a type-specific payload. Envelopes are immutable; a replay of the
same logical event must reuse the same ``event_id`` so that consumers can
deduplicate it.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import NAMESPACE_URL, uuid4, uuid5

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SCHEMA_VERSION = "1.0"


class EventType:
    CHECKOUT = "command.checkout"
    ORDER_CREATED = "order.created"
    ORDER_PROCESSING = "order.processing"
    ORDER_SHIPPED = "order.shipped"
    ORDER_DELIVERED = "order.delivered"
    ORDER_CANCELLED = "order.cancelled"
    EMAIL = "notification.email"
    STOCK_UPDATED = "inventory.stock.updated"
    AUDIT = "analytics.audit"
    DEAD_LETTER = "analytics.dlq"


class Envelope(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    event_id: str = Field(alias="eventId", min_length=1)
    event_type: str = Field(alias="eventType", min_length=1)
    timestamp: datetime
    version: str = SCHEMA_VERSION
    source: str
    correlation_id: str | None = Field(default=None, alias="correlationId")
    payload: dict[str, Any]

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @property
    def chain_id(self) -> str:
        """Correlation id of the causal chain; the first event starts it."""
        return self.correlation_id or self.event_id


def derived_event_id(parent_id: str, *parts: object) -> str:
    """Stable id for an event derived from ``parent_id``.

    Re-publishing a derived event therefore reuses its id, and the
    receiving consumer deduplicates it.
    """
    name = ":".join([parent_id, *(str(p) for p in parts)])
    return str(uuid5(NAMESPACE_URL, name))


def wrap(
    event_type: str,
    payload: BaseModel | dict[str, Any],
    source: str,
    correlation_id: str | None = None,
    event_id: str | None = None,
) -> Envelope:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
    return Envelope(
        event_id=event_id or str(uuid4()),
        event_type=event_type,
        timestamp=datetime.now(timezone.utc),
        source=source,
        correlation_id=correlation_id,
        payload=payload,
    )


# ── Payloads ─────────────────────────────────────


class Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LineItem(Payload):
    product_id: str
    variation_id: str | None = None
    quantity: int = Field(gt=0)
    price: float = Field(ge=0)
    product_name: str | None = None


class CheckoutCommandPayload(Payload):
    """Issued once by the checkout API after the payment succeeded."""

    user_id: str | None = None
    customer_name: str
    customer_email: str
    customer_address: str
    items: list[LineItem] = Field(min_length=1)
    total_amount: float = Field(ge=0)
    payment_id: str


class OrderPayload(Payload):
    order_id: str
    user_id: str | None = None
    customer_name: str
    customer_email: str
    customer_address: str
    items: list[LineItem]
    total_amount: float
    status: str


class OrderStatusPayload(Payload):
    order_id: str
    reason: str | None = None


class EmailNotificationPayload(Payload):
    to: str
    subject: str
    template_id: str
    template_data: dict[str, Any]
    priority: str = "normal"


class StockUpdatePayload(Payload):
    product_id: str
    variation_id: str | None = None
    previous_stock: int
    new_stock: int
    reason: str
    order_id: str | None = None


class AuditLogPayload(Payload):
    action: str
    entity_type: str
    entity_id: str
    user_id: str | None = None
    previous_state: dict[str, Any] | None = None
    new_state: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeadLetterPayload(Payload):
    original_topic: str
    original_event_type: str
    original_event: dict[str, Any]
    error: str
    failed_at: datetime
    retry_count: int = 0
