"""
Order Pipeline — relational schema

Products and variations are owned by the catalog; the pipeline only
moves their stock counters. Orders and order items are written by the
checkout transaction. analytics_events is the projection of the
analytics topic.
"""

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("price", Numeric(10, 2, asdecimal=False), nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
)

product_variations = Table(
    "product_variations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("product_id", String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("price_modifier", Numeric(10, 2, asdecimal=False), nullable=False, default=0),
    Column("stock", Integer, nullable=False, default=0),
    CheckConstraint("stock >= 0", name="ck_variations_stock_non_negative"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    # Envelope id of the checkout command; one order per command.
    Column("source_event_id", String(64), nullable=False, unique=True),
    Column("user_id", String(64)),
    Column("customer_name", String(255), nullable=False),
    Column("customer_email", String(255), nullable=False),
    Column("customer_address", String(1024), nullable=False),
    Column("total_amount", Numeric(10, 2, asdecimal=False), nullable=False),
    Column("status", String(16), nullable=False, default="PENDING"),
    Column("payment_id", String(255)),
    Column("correlation_id", String(64)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("product_id", String(36), ForeignKey("products.id"), nullable=False),
    Column("variation_id", String(36), ForeignKey("product_variations.id")),
    Column("quantity", Integer, nullable=False),
    # Unit price at order time; never recomputed.
    Column("price", Numeric(10, 2, asdecimal=False), nullable=False),
)

analytics_events = Table(
    "analytics_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_id", String(64), nullable=False, unique=True),
    Column("event_type", String(64), nullable=False, index=True),
    Column("correlation_id", String(64)),
    Column("payload", JSON, nullable=False),
    Column("received_at", DateTime(timezone=True), nullable=False),
)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
