"""
Shared fixtures

- a real SQL engine (SQLite through aiosqlite) with the pipeline schema
- an in-memory stand-in for the Redis idempotency store
- a recording stand-in for the queue's HTTP API (httpx.MockTransport)
- an HTTP client bound to the FastAPI app through ASGITransport
"""

import json
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import create_async_engine

from order_pipeline.config import Settings
from order_pipeline.context import PipelineContext
from order_pipeline.events import CheckoutCommandPayload, EventType, LineItem, wrap
from order_pipeline.main import app
from order_pipeline.schema import init_db, product_variations, products
from order_pipeline.signature import SIGNATURE_HEADER, sign

CURRENT_KEY = "sig_current_0123456789abcdef0123456789abcdef"
NEXT_KEY = "sig_next_fedcba9876543210fedcba9876543210"

PRODUCT_A = "11111111-1111-1111-1111-111111111111"
PRODUCT_B = "22222222-2222-2222-2222-222222222222"
PRODUCT_C = "33333333-3333-3333-3333-333333333333"
VARIATION_A1 = "aaaaaaaa-1111-1111-1111-111111111111"


# =============================================================================
# Test doubles
# =============================================================================


class FakeRedis:
    """The slice of redis.asyncio.Redis the idempotency store uses."""

    def __init__(self):
        self.data: dict[str, tuple[str, int | None]] = {}
        self.down = False

    def _check(self):
        if self.down:
            raise RedisConnectionError("Connection refused")

    async def exists(self, *keys: str) -> int:
        self._check()
        return sum(1 for key in keys if key in self.data)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._check()
        self.data[key] = (value, ex)
        return True

    async def aclose(self) -> None:
        pass


class QueueRecorder:
    """Records what the publisher sends to the queue API."""

    def __init__(self):
        self.published: list[dict] = []
        self.batches: list[list[dict]] = []
        self.fail_types: set[str] = set()
        self.batch_supported = True

    @property
    def envelopes(self) -> list[dict]:
        return [p["body"] for p in self.published]

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.envelopes if e["eventType"] == event_type]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/v2/publish/"):
            body = json.loads(request.content)
            if body["eventType"] in self.fail_types:
                return httpx.Response(500, json={"error": "queue unavailable"})
            self.published.append({
                "destination": path[len("/v2/publish/"):],
                "headers": dict(request.headers),
                "body": body,
            })
            return httpx.Response(201, json={"messageId": f"msg_{uuid4().hex}"})
        if path == "/v2/batch":
            if not self.batch_supported:
                return httpx.Response(404, json={"error": "not found"})
            batch = json.loads(request.content)
            self.batches.append(batch)
            return httpx.Response(201, json=[{"messageId": f"msg_{uuid4().hex}"} for _ in batch])
        return httpx.Response(404)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}",
        qstash_url="https://qstash.test",
        qstash_token="test-token",
        current_signing_key=CURRENT_KEY,
        next_signing_key=NEXT_KEY,
        webhook_base_url="https://shop.test",
        webhook_timeout_seconds=10,
    )


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def queue() -> QueueRecorder:
    return QueueRecorder()


@pytest_asyncio.fixture
async def engine(settings):
    engine = create_async_engine(settings.database_url, connect_args={"timeout": 30})
    await init_db(engine)
    async with engine.begin() as conn:
        await conn.execute(insert(products), [
            {"id": PRODUCT_A, "name": "Product A", "price": 10.0, "stock": 10},
            {"id": PRODUCT_B, "name": "Product B", "price": 25.0, "stock": 5},
            {"id": PRODUCT_C, "name": "Product C", "price": 7.5, "stock": 3},
        ])
        await conn.execute(insert(product_variations), [
            {"id": VARIATION_A1, "product_id": PRODUCT_A, "name": "Large", "price_modifier": 2.0, "stock": 4},
        ])
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def pipeline(settings, engine, fake_redis, queue):
    http = httpx.AsyncClient(transport=httpx.MockTransport(queue.handler))
    ctx = PipelineContext(settings, engine, fake_redis, http)
    ctx.processor.publish_backoff = 0
    yield ctx
    await http.aclose()


@pytest_asyncio.fixture
async def client(pipeline):
    app.state.pipeline = pipeline
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# =============================================================================
# Builders
# =============================================================================


def checkout_payload(items: list[LineItem] | None = None, **overrides) -> CheckoutCommandPayload:
    items = items or [
        LineItem(product_id=PRODUCT_A, quantity=2, price=10.0),
        LineItem(product_id=PRODUCT_B, quantity=1, price=25.0),
    ]
    data = {
        "user_id": "user_42",
        "customer_name": "Ada Lovelace",
        "customer_email": "ada@example.com",
        "customer_address": "12 Analytical St, London",
        "items": items,
        "total_amount": sum(i.price * i.quantity for i in items),
        "payment_id": f"pay_{uuid4().hex}",
    }
    data.update(overrides)
    return CheckoutCommandPayload(**data)


def checkout_envelope(payload: CheckoutCommandPayload | None = None, correlation_id: str | None = None):
    return wrap(
        EventType.CHECKOUT,
        payload or checkout_payload(),
        "checkout-api",
        correlation_id or f"corr_{uuid4().hex}",
    )


def signed_headers(body: bytes, key: str = CURRENT_KEY, extra: dict | None = None) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: sign(body, key),
        **(extra or {}),
    }


async def deliver(client: AsyncClient, topic: str, envelope, key: str = CURRENT_KEY, headers: dict | None = None):
    body = json.dumps(envelope.to_wire()).encode()
    return await client.post(
        f"/api/webhooks/{topic}", content=body, headers=signed_headers(body, key, headers)
    )
