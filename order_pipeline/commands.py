"""
Order Pipeline — order transaction processor (write side)

A checkout command becomes an order inside one database transaction:

    1. INSERT the order (PENDING)
    2. decrement stock with a single UPDATE ... SET stock = stock - :qty
       per line item, in product order (row locks serialize concurrent
       checkouts)
    3. INSERT the order items with their snapshotted prices
    4. COMMIT

Only after the commit are the derived events published. Each derived
event has an id derived from the command id, so a publish can be retried
on its own without re-running the transaction.
"""

import asyncio
import logging
from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import insert, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .aggregate import OrderStatus, check_transition
from .errors import (
    BusinessInvariantViolation,
    InsufficientStock,
    OrderNotFound,
    ProductNotFound,
    PublishError,
    TransientProcessingFailure,
)
from .events import (
    AuditLogPayload,
    CheckoutCommandPayload,
    EmailNotificationPayload,
    Envelope,
    EventType,
    LineItem,
    OrderPayload,
    StockUpdatePayload,
    derived_event_id,
)
from .publisher import QueuePublisher
from .schema import order_items, orders

logger = logging.getLogger(__name__)

DECREMENT_PRODUCT = text("""
    UPDATE products
    SET stock = stock - :qty
    WHERE id = :id AND stock >= :qty
    RETURNING stock
""")

DECREMENT_VARIATION = text("""
    UPDATE product_variations
    SET stock = stock - :qty
    WHERE id = :id AND product_id = :product_id AND stock >= :qty
    RETURNING stock
""")

INCREMENT_PRODUCT = text("UPDATE products SET stock = stock + :qty WHERE id = :id")
INCREMENT_VARIATION = text(
    "UPDATE product_variations SET stock = stock + :qty WHERE id = :id"
)

SELECT_PRODUCT_STOCK = text("SELECT stock FROM products WHERE id = :id")
SELECT_VARIATION_STOCK = text(
    "SELECT stock FROM product_variations WHERE id = :id AND product_id = :product_id"
)


def lock_order(item) -> tuple[str, str]:
    """Order in which a transaction locks stock rows; the same for every transaction."""
    return item.product_id, item.variation_id or ""


class CheckoutOutcome(BaseModel):
    order_id: str
    duplicate: bool = False
    order: OrderPayload | None = None
    failed_publishes: list[str] = []


class OrderTransactionProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: QueuePublisher,
        publish_attempts: int = 3,
        publish_backoff: float = 0.2,
    ):
        self.session_factory = session_factory
        self.publisher = publisher
        self.publish_attempts = publish_attempts
        self.publish_backoff = publish_backoff

    # ── Checkout ─────────────────────────────────

    async def process(self, envelope: Envelope, command: CheckoutCommandPayload) -> CheckoutOutcome:
        correlation_id = envelope.chain_id
        order_id = str(uuid4())
        now = datetime.now(timezone.utc)

        logger.info(
            "Processing checkout %s for user %s, payment %s",
            envelope.event_id, command.user_id, command.payment_id,
        )

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(
                        insert(orders).values(
                            id=order_id,
                            source_event_id=envelope.event_id,
                            user_id=command.user_id,
                            customer_name=command.customer_name,
                            customer_email=command.customer_email,
                            customer_address=command.customer_address,
                            total_amount=command.total_amount,
                            status=OrderStatus.PENDING.value,
                            payment_id=command.payment_id,
                            correlation_id=correlation_id,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    # Stock before items: an unknown product surfaces as
                    # ProductNotFound instead of a foreign key error.
                    stock_changes = [
                        await self._decrement_stock(session, item, order_id)
                        for item in sorted(command.items, key=lock_order)
                    ]
                    await session.execute(
                        insert(order_items),
                        [
                            {
                                "id": str(uuid4()),
                                "order_id": order_id,
                                "product_id": item.product_id,
                                "variation_id": item.variation_id,
                                "quantity": item.quantity,
                                "price": item.price,
                            }
                            for item in command.items
                        ],
                    )
        except BusinessInvariantViolation:
            logger.warning("Checkout %s rolled back", envelope.event_id)
            raise
        except IntegrityError as e:
            existing = await self._order_for_event(envelope.event_id)
            if existing:
                logger.info(
                    "Checkout %s already created order %s, skipping",
                    envelope.event_id, existing,
                )
                return CheckoutOutcome(order_id=existing, duplicate=True)
            raise TransientProcessingFailure(f"checkout transaction failed: {e}") from e
        except SQLAlchemyError as e:
            logger.error("Checkout %s transaction failed: %s", envelope.event_id, e)
            raise TransientProcessingFailure(f"checkout transaction failed: {e}") from e

        logger.info("Order %s created for checkout %s", order_id, envelope.event_id)

        order = OrderPayload(
            order_id=order_id,
            user_id=command.user_id,
            customer_name=command.customer_name,
            customer_email=command.customer_email,
            customer_address=command.customer_address,
            items=command.items,
            total_amount=command.total_amount,
            status=OrderStatus.PENDING.value,
        )
        failed = await self._publish_order_events(envelope, command, order, stock_changes)
        return CheckoutOutcome(order_id=order_id, order=order, failed_publishes=failed)

    async def _decrement_stock(
        self, session: AsyncSession, item: LineItem, order_id: str
    ) -> StockUpdatePayload:
        if item.variation_id:
            row = (await session.execute(
                DECREMENT_VARIATION,
                {"qty": item.quantity, "id": item.variation_id, "product_id": item.product_id},
            )).fetchone()
            if row is None:
                current = (await session.execute(
                    SELECT_VARIATION_STOCK,
                    {"id": item.variation_id, "product_id": item.product_id},
                )).fetchone()
                if current is None:
                    raise ProductNotFound(item.product_id, item.variation_id)
                raise InsufficientStock(item.variation_id, item.quantity, current.stock)

        row = (await session.execute(
            DECREMENT_PRODUCT, {"qty": item.quantity, "id": item.product_id}
        )).fetchone()
        if row is None:
            current = (await session.execute(
                SELECT_PRODUCT_STOCK, {"id": item.product_id}
            )).fetchone()
            if current is None:
                raise ProductNotFound(item.product_id)
            raise InsufficientStock(item.product_id, item.quantity, current.stock)

        return StockUpdatePayload(
            product_id=item.product_id,
            variation_id=item.variation_id,
            previous_stock=row.stock + item.quantity,
            new_stock=row.stock,
            reason="sale",
            order_id=order_id,
        )

    async def _order_for_event(self, event_id: str) -> str | None:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(orders.c.id).where(orders.c.source_event_id == event_id)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise TransientProcessingFailure(f"order lookup failed: {e}") from e

    # ── Post-commit fan-out ──────────────────────

    async def _publish_order_events(
        self,
        envelope: Envelope,
        command: CheckoutCommandPayload,
        order: OrderPayload,
        stock_changes: list[StockUpdatePayload],
    ) -> list[str]:
        """Publish derived events; returns the labels of those that failed."""
        correlation_id = envelope.chain_id
        parent = envelope.event_id

        email = EmailNotificationPayload(
            to=command.customer_email,
            subject=f"Order Confirmation - {order.order_id}",
            template_id="order-confirmation",
            template_data={
                "orderId": order.order_id,
                "customerName": command.customer_name,
                "items": [item.model_dump(mode="json", by_alias=True, exclude_none=True) for item in command.items],
                "totalAmount": command.total_amount,
            },
            priority="high",
        )
        audit = AuditLogPayload(
            action="order.created",
            entity_type="order",
            entity_id=order.order_id,
            user_id=command.user_id,
            new_state=order.model_dump(mode="json", by_alias=True, exclude_none=True),
            metadata={"paymentId": command.payment_id, "correlationId": correlation_id},
        )

        publishes = [
            (EventType.ORDER_CREATED, lambda: self.publisher.publish_order_created(
                order, correlation_id, derived_event_id(parent, EventType.ORDER_CREATED))),
            (EventType.EMAIL, lambda: self.publisher.publish_email_notification(
                email, correlation_id, derived_event_id(parent, EventType.EMAIL))),
        ]
        for index, change in enumerate(stock_changes):
            publishes.append((
                f"{EventType.STOCK_UPDATED}[{change.product_id}]",
                lambda change=change, index=index: self.publisher.publish_stock_update(
                    change, correlation_id, derived_event_id(parent, EventType.STOCK_UPDATED, index)),
            ))
        publishes.append((EventType.AUDIT, lambda: self.publisher.publish_audit_log(
            audit, correlation_id, derived_event_id(parent, EventType.AUDIT))))

        results = await asyncio.gather(
            *(self._publish_with_retry(label, factory) for label, factory in publishes),
            return_exceptions=True,
        )
        failed = []
        for (label, _), result in zip(publishes, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Order %s: %s was not published: %s", order.order_id, label, result
                )
                failed.append(label)
        return failed

    async def _publish_with_retry(self, label, factory):
        for attempt in range(1, self.publish_attempts + 1):
            try:
                return await factory()
            except PublishError:
                if attempt == self.publish_attempts:
                    raise
                logger.warning("Retrying publish of %s (attempt %d)", label, attempt)
                await asyncio.sleep(self.publish_backoff * attempt)

    # ── Status changes ───────────────────────────

    async def apply_status(self, order_id: str, target: OrderStatus) -> str:
        """Move an order to ``target``; cancelling restores its stock.

        Returns the order's status afterwards.
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    current = (await session.execute(
                        select(orders.c.status).where(orders.c.id == order_id)
                    )).scalar_one_or_none()
                    if current is None:
                        raise OrderNotFound(f"order {order_id} not found")
                    if not check_transition(current, target):
                        return current

                    result = await session.execute(
                        update(orders)
                        .where(orders.c.id == order_id, orders.c.status == current)
                        .values(status=target.value, updated_at=datetime.now(timezone.utc))
                    )
                    if result.rowcount != 1:
                        raise TransientProcessingFailure(
                            f"order {order_id} changed status concurrently"
                        )
                    if target == OrderStatus.CANCELLED:
                        await self._restock(session, order_id)
        except (BusinessInvariantViolation, TransientProcessingFailure):
            raise
        except SQLAlchemyError as e:
            raise TransientProcessingFailure(f"status update failed: {e}") from e

        logger.info("Order %s moved from %s to %s", order_id, current, target.value)
        return target.value

    async def _restock(self, session: AsyncSession, order_id: str) -> None:
        items = (await session.execute(
            select(order_items.c.product_id, order_items.c.variation_id, order_items.c.quantity)
            .where(order_items.c.order_id == order_id)
        )).fetchall()
        for item in sorted(items, key=lock_order):
            if item.variation_id:
                await session.execute(
                    INCREMENT_VARIATION, {"qty": item.quantity, "id": item.variation_id}
                )
            await session.execute(
                INCREMENT_PRODUCT, {"qty": item.quantity, "id": item.product_id}
            )
