"""
Queue publisher against a recorded queue API
"""

import httpx
import pytest
import pytest_asyncio

from conftest import checkout_payload
from order_pipeline.errors import InsufficientStock, PublishError
from order_pipeline.events import EventType, derived_event_id, wrap
from order_pipeline.publisher import BATCH_LIMIT, OutboundMessage, QueuePublisher
from order_pipeline.routing import Topic

pytestmark = [pytest.mark.unit]


@pytest_asyncio.fixture
async def publisher(settings, queue):
    async with httpx.AsyncClient(transport=httpx.MockTransport(queue.handler)) as http:
        yield QueuePublisher(http, settings)


async def test_publish_posts_to_topic_webhook(publisher, queue):
    envelope = wrap(EventType.ORDER_CREATED, {"orderId": "o1"}, "orders-service", "corr-1")

    message_id = await publisher.publish(Topic.ORDERS, envelope)

    assert message_id.startswith("msg_")
    [sent] = queue.published
    assert sent["destination"] == "https://shop.test/api/webhooks/orders"
    assert sent["body"] == envelope.to_wire()
    assert sent["headers"]["authorization"] == "Bearer test-token"
    assert sent["headers"]["upstash-retries"] == "3"
    assert sent["headers"]["upstash-forward-x-event-id"] == envelope.event_id
    assert sent["headers"]["upstash-forward-x-event-type"] == EventType.ORDER_CREATED
    assert sent["headers"]["upstash-forward-x-correlation-id"] == "corr-1"
    assert "upstash-delay" not in sent["headers"]


async def test_publish_options(publisher, queue):
    envelope = wrap(EventType.EMAIL, {}, "api")

    await publisher.publish(Topic.NOTIFICATIONS, envelope, retries=0, delay_ms=1500)

    headers = queue.published[0]["headers"]
    assert headers["upstash-retries"] == "0"
    assert headers["upstash-delay"] == "2s"


async def test_publish_auto_route(publisher, queue):
    await publisher.publish_auto_route(wrap(EventType.STOCK_UPDATED, {}, "api"))
    await publisher.publish_auto_route(wrap("loyalty.points.earned", {}, "api"))

    assert [p["destination"] for p in queue.published] == [
        "https://shop.test/api/webhooks/inventory",
        "https://shop.test/api/webhooks/analytics",
    ]


async def test_rejected_publish_raises(publisher, queue):
    queue.fail_types.add(EventType.AUDIT)

    with pytest.raises(PublishError):
        await publisher.publish(Topic.ANALYTICS, wrap(EventType.AUDIT, {}, "api"))


async def test_unreachable_queue_raises(settings):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as http:
        with pytest.raises(PublishError):
            await QueuePublisher(http, settings).publish(
                Topic.ORDERS, wrap(EventType.ORDER_CREATED, {}, "api")
            )


async def test_batch_is_chunked(publisher, queue):
    messages = [
        OutboundMessage(topic=Topic.ANALYTICS, envelope=wrap(EventType.AUDIT, {"n": n}, "api"))
        for n in range(BATCH_LIMIT + 20)
    ]

    await publisher.publish_batch(messages)

    assert [len(b) for b in queue.batches] == [BATCH_LIMIT, 20]
    first = queue.batches[0][0]
    assert first["destination"] == "https://shop.test/api/webhooks/analytics"
    assert first["headers"]["Upstash-Forward-X-Event-ID"] == messages[0].envelope.event_id


async def test_batch_falls_back_to_single_publishes(publisher, queue):
    queue.batch_supported = False
    messages = [
        OutboundMessage(topic=Topic.INVENTORY, envelope=wrap(EventType.STOCK_UPDATED, {}, "api"), delay_ms=1000),
        OutboundMessage(topic=Topic.ORDERS, envelope=wrap(EventType.ORDER_CREATED, {}, "api"), retries=1),
    ]

    await publisher.publish_batch(messages)

    assert queue.batches == []
    assert [p["body"]["eventId"] for p in queue.published] == [m.envelope.event_id for m in messages]
    assert queue.published[0]["headers"]["upstash-delay"] == "1s"
    assert queue.published[1]["headers"]["upstash-retries"] == "1"


async def test_dead_letter_keeps_original_event(publisher, queue):
    failed = wrap(EventType.CHECKOUT, {"paymentId": "pay_1"}, "checkout-api", "corr-7")

    dlq = await publisher.publish_dead_letter(
        Topic.COMMANDS, failed, InsufficientStock("p1", 5, 2), retry_count=2
    )
    again = await publisher.publish_dead_letter(
        Topic.COMMANDS, failed, InsufficientStock("p1", 5, 2), retry_count=3
    )

    assert dlq.event_id == again.event_id == derived_event_id(failed.event_id, EventType.DEAD_LETTER)
    assert dlq.correlation_id == "corr-7"
    assert dlq.source == "consumer-dlq"
    body = queue.published[0]["body"]
    assert queue.published[0]["destination"] == "https://shop.test/api/webhooks/analytics"
    assert body["eventType"] == EventType.DEAD_LETTER
    assert body["payload"]["originalTopic"] == "commands"
    assert body["payload"]["originalEvent"] == failed.to_wire()
    assert body["payload"]["retryCount"] == 2
    assert "Insufficient stock" in body["payload"]["error"]


async def test_checkout_command_goes_to_commands_topic(publisher, queue):
    envelope = await publisher.publish_checkout_command(checkout_payload(), "corr-9")

    [sent] = queue.published
    assert sent["destination"] == "https://shop.test/api/webhooks/commands"
    assert sent["body"]["eventId"] == envelope.event_id
    assert sent["body"]["source"] == "checkout-api"
    assert sent["body"]["payload"]["totalAmount"] == 45.0


@pytest.mark.parametrize(
    "status_code, reply",
    [
        (200, {"text": "OK"}),
        (202, {}),
        (201, {"json": ["unexpected"]}),
    ],
)
async def test_accepted_publish_without_message_id(settings, status_code, reply):
    def accept(request):
        return httpx.Response(status_code, **reply)

    async with httpx.AsyncClient(transport=httpx.MockTransport(accept)) as http:
        publisher = QueuePublisher(http, settings)

        assert await publisher.publish(Topic.ORDERS, wrap(EventType.ORDER_CREATED, {}, "api")) is None
        dlq = await publisher.publish_dead_letter(
            Topic.COMMANDS, wrap(EventType.CHECKOUT, {}, "checkout-api"), InsufficientStock("p1", 2, 1)
        )
        assert dlq.event_type == EventType.DEAD_LETTER
