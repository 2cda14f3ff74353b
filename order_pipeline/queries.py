"""
Order Pipeline — query handlers (read side)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import order_items, orders, product_variations, products


def _order_row(row) -> dict:
    return {
        "id": row.id,
        "source_event_id": row.source_event_id,
        "user_id": row.user_id,
        "customer_name": row.customer_name,
        "customer_email": row.customer_email,
        "customer_address": row.customer_address,
        "total_amount": float(row.total_amount),
        "status": row.status,
        "payment_id": row.payment_id,
        "correlation_id": row.correlation_id,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """Order with its line items."""
    row = (await session.execute(
        select(orders).where(orders.c.id == order_id)
    )).fetchone()
    if not row:
        return None
    order = _order_row(row)
    items = await session.execute(
        select(order_items).where(order_items.c.order_id == order_id)
    )
    order["items"] = [
        {
            "product_id": item.product_id,
            "variation_id": item.variation_id,
            "quantity": item.quantity,
            "price": float(item.price),
        }
        for item in items.fetchall()
    ]
    return order


async def list_orders(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(orders).order_by(orders.c.created_at.desc()))
    return [_order_row(row) for row in result.fetchall()]


async def get_stock(session: AsyncSession, product_id: str) -> dict | None:
    product = (await session.execute(
        select(products.c.id, products.c.stock).where(products.c.id == product_id)
    )).fetchone()
    if not product:
        return None
    variations = await session.execute(
        select(product_variations.c.id, product_variations.c.stock)
        .where(product_variations.c.product_id == product_id)
    )
    return {
        "product_id": product.id,
        "stock": product.stock,
        "variations": {v.id: v.stock for v in variations.fetchall()},
    }
