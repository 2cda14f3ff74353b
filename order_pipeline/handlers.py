"""
Order Pipeline — in-process event handlers

Each topic consumer dispatches by event type to one of these handlers.
A handler returns extra fields for the acknowledgement body, or raises
a PipelineError that decides whether the queue retries.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .aggregate import STATUS_FOR_EVENT
from .context import PipelineContext
from .errors import MalformedMessage, PublishError, TransientProcessingFailure
from .events import (
    AuditLogPayload,
    CheckoutCommandPayload,
    DeadLetterPayload,
    EmailNotificationPayload,
    Envelope,
    EventType,
    OrderPayload,
    OrderStatusPayload,
    StockUpdatePayload,
    derived_event_id,
)
from .notifications import render
from .projections import project_analytics_event
from .routing import Topic

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=BaseModel)


class Delivery(BaseModel):
    """Queue metadata of one delivery attempt."""

    retry_count: int = 0
    message_id: str | None = None


Handler = Callable[[PipelineContext, Envelope, Delivery], Awaitable[dict[str, Any]]]


def parse_payload(model: type[P], envelope: Envelope) -> P:
    try:
        return model.model_validate(envelope.payload)
    except ValidationError as e:
        raise MalformedMessage(
            f"{envelope.event_type} payload is invalid: {e.error_count()} error(s)"
        ) from e


# ── Commands ─────────────────────────────────────


async def handle_checkout(ctx: PipelineContext, envelope: Envelope, delivery: Delivery) -> dict:
    command = parse_payload(CheckoutCommandPayload, envelope)
    outcome = await ctx.processor.process(envelope, command)
    result = {"orderId": outcome.order_id, "duplicate": outcome.duplicate}
    if outcome.failed_publishes:
        result["failedPublishes"] = outcome.failed_publishes
    return result


# ── Orders ───────────────────────────────────────


async def handle_order_created(ctx: PipelineContext, envelope: Envelope, delivery: Delivery) -> dict:
    order = parse_payload(OrderPayload, envelope)
    logger.info(
        "Order %s created: %d item(s), total %.2f, status %s",
        order.order_id, len(order.items), order.total_amount, order.status,
    )
    return {"orderId": order.order_id}


async def handle_order_status(ctx: PipelineContext, envelope: Envelope, delivery: Delivery) -> dict:
    change = parse_payload(OrderStatusPayload, envelope)
    target = STATUS_FOR_EVENT[envelope.event_type]
    status = await ctx.processor.apply_status(change.order_id, target)
    return {"orderId": change.order_id, "status": status}


# ── Notifications ────────────────────────────────


async def handle_email(ctx: PipelineContext, envelope: Envelope, delivery: Delivery) -> dict:
    email = parse_payload(EmailNotificationPayload, envelope)
    logger.info("Processing %s priority email to %s: %s", email.priority, email.to, email.subject)

    text_body, html_body = render(email.template_id, email.template_data)
    sent = await ctx.mailer.send(email.to, email.subject, text_body, html_body)

    audit = AuditLogPayload(
        action="email.sent" if sent else "email.failed",
        entity_type="email",
        entity_id=envelope.event_id,
        metadata={
            "to": email.to,
            "subject": email.subject,
            "templateId": email.template_id,
            "priority": email.priority,
            "retryCount": delivery.retry_count,
        },
    )
    try:
        await ctx.publisher.publish_audit_log(
            audit,
            envelope.chain_id,
            derived_event_id(envelope.event_id, EventType.AUDIT, delivery.retry_count),
        )
    except PublishError:
        logger.exception("Audit log for email %s was not published", envelope.event_id)

    if not sent:
        raise TransientProcessingFailure(f"Failed to send email to {email.to}")
    return {}


# ── Inventory ────────────────────────────────────


async def handle_stock_updated(ctx: PipelineContext, envelope: Envelope, delivery: Delivery) -> dict:
    update = parse_payload(StockUpdatePayload, envelope)
    logger.info(
        "Stock of %s changed %d -> %d (%s, order %s)",
        update.product_id, update.previous_stock, update.new_stock, update.reason, update.order_id,
    )
    low_stock = update.new_stock <= ctx.settings.low_stock_threshold
    if low_stock:
        logger.warning("Low stock for product %s: %d left", update.product_id, update.new_stock)
    return {"lowStock": low_stock}


# ── Analytics ────────────────────────────────────


async def _project(ctx: PipelineContext, envelope: Envelope) -> None:
    try:
        async with ctx.session_factory() as session:
            await project_analytics_event(session, envelope)
    except SQLAlchemyError as e:
        raise TransientProcessingFailure(f"analytics projection failed: {e}") from e


async def handle_audit(ctx: PipelineContext, envelope: Envelope, delivery: Delivery) -> dict:
    audit = parse_payload(AuditLogPayload, envelope)
    logger.info("Audit: %s on %s:%s", audit.action, audit.entity_type, audit.entity_id)
    await _project(ctx, envelope)
    return {}


async def handle_dead_letter(ctx: PipelineContext, envelope: Envelope, delivery: Delivery) -> dict:
    dead = parse_payload(DeadLetterPayload, envelope)
    logger.error(
        "Dead letter from %s: %s failed after %d retries: %s",
        dead.original_topic, dead.original_event_type, dead.retry_count, dead.error,
    )
    await _project(ctx, envelope)
    return {}


HANDLERS: dict[Topic, dict[str, Handler]] = {
    Topic.COMMANDS: {
        EventType.CHECKOUT: handle_checkout,
    },
    Topic.ORDERS: {
        EventType.ORDER_CREATED: handle_order_created,
        EventType.ORDER_PROCESSING: handle_order_status,
        EventType.ORDER_SHIPPED: handle_order_status,
        EventType.ORDER_DELIVERED: handle_order_status,
        EventType.ORDER_CANCELLED: handle_order_status,
    },
    Topic.NOTIFICATIONS: {
        EventType.EMAIL: handle_email,
    },
    Topic.INVENTORY: {
        EventType.STOCK_UPDATED: handle_stock_updated,
    },
    Topic.ANALYTICS: {
        EventType.AUDIT: handle_audit,
        EventType.DEAD_LETTER: handle_dead_letter,
    },
}
