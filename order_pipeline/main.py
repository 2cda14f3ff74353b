"""
Order Pipeline — FastAPI entry point

Serves the five topic webhooks the message queue delivers to, plus the
read side for orders and stock. Database engine, Redis pool and the
queue HTTP client are created once in the lifespan and closed on
shutdown.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request

from . import queries
from .config import Settings
from .consumers import router as webhook_router
from .context import PipelineContext
from .schema import init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if settings.dev_mode:
        logger.warning("PIPELINE_DEV_MODE is on: unsigned webhook requests are accepted")

    pipeline = PipelineContext.from_settings(settings)
    await init_db(pipeline.engine)
    app.state.pipeline = pipeline
    yield
    await pipeline.aclose()


app = FastAPI(title="Order Pipeline", lifespan=lifespan)
app.include_router(webhook_router)


# ── Query Endpoints (read side) ──────────────────


@app.get("/queries/orders")
async def query_list_orders(request: Request):
    async with request.app.state.pipeline.session_factory() as session:
        return await queries.list_orders(session)


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: str, request: Request):
    async with request.app.state.pipeline.session_factory() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order


@app.get("/queries/products/{product_id}/stock")
async def query_stock(product_id: str, request: Request):
    async with request.app.state.pipeline.session_factory() as session:
        stock = await queries.get_stock(session, product_id)
        if not stock:
            raise HTTPException(404, "Product not found")
        return stock


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-pipeline"}
