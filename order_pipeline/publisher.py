"""
Order Pipeline — publisher

Hands envelopes to the HTTP message queue (Upstash QStash API), which
POSTs them to the topic webhook at least once. The envelope id travels
unchanged in the body and in the forwarded headers, so publishing the
same envelope twice cannot change the receiver's dedup decision.
"""

import json
import logging
import math
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import BaseModel

from .config import Settings
from .errors import PublishError
from .events import (
    AuditLogPayload,
    CheckoutCommandPayload,
    DeadLetterPayload,
    EmailNotificationPayload,
    Envelope,
    EventType,
    OrderPayload,
    StockUpdatePayload,
    derived_event_id,
    wrap,
)
from .routing import Topic, route_for, webhook_url

logger = logging.getLogger(__name__)

BATCH_LIMIT = 100
# Status codes meaning "this queue has no batch endpoint".
NO_BATCH_STATUSES = {404, 405, 501}


class OutboundMessage(BaseModel):
    topic: Topic
    envelope: Envelope
    retries: int | None = None
    delay_ms: int = 0


def event_headers(envelope: Envelope) -> dict[str, str]:
    return {
        "X-Event-Type": envelope.event_type,
        "X-Event-ID": envelope.event_id,
        "X-Correlation-ID": envelope.correlation_id or "",
        "X-Event-Version": envelope.version,
        "X-Event-Source": envelope.source,
    }


class QueuePublisher:
    def __init__(self, client: httpx.AsyncClient, settings: Settings):
        self.client = client
        self.settings = settings

    # ── Low-level publish ────────────────────────

    def _queue_headers(self, retries: int | None, delay_ms: int) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Upstash-Retries": str(
                self.settings.default_retries if retries is None else retries
            ),
        }
        if delay_ms > 0:
            headers["Upstash-Delay"] = f"{math.ceil(delay_ms / 1000)}s"
        return headers

    def _auth_headers(self) -> dict[str, str]:
        if not self.settings.qstash_token:
            return {}
        return {"Authorization": f"Bearer {self.settings.qstash_token}"}

    def _forward_headers(self, envelope: Envelope) -> dict[str, str]:
        return {
            f"Upstash-Forward-{name}": value
            for name, value in event_headers(envelope).items()
        }

    async def publish(
        self,
        topic: Topic,
        envelope: Envelope,
        retries: int | None = None,
        delay_ms: int = 0,
    ) -> str | None:
        """Publish one envelope. Returns the queue's message id."""
        target = webhook_url(self.settings.webhook_base_url, topic)
        headers = {
            **self._auth_headers(),
            **self._queue_headers(retries, delay_ms),
            **self._forward_headers(envelope),
        }
        try:
            resp = await self.client.post(
                f"{self.settings.qstash_url}/v2/publish/{target}",
                content=json.dumps(envelope.to_wire()),
                headers=headers,
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                "Failed to publish %s (%s) to %s: %s",
                envelope.event_type, envelope.event_id, topic.value, e,
            )
            raise PublishError(f"publish {envelope.event_type} failed: {e}") from e

        logger.info(
            "Published %s (%s) to %s", envelope.event_type, envelope.event_id, topic.value
        )
        # The message is accepted once the queue answers 2xx; the id is informational.
        try:
            reply = resp.json()
        except ValueError:
            logger.warning("Queue accepted %s without a JSON reply", envelope.event_id)
            return None
        return reply.get("messageId") if isinstance(reply, dict) else None

    async def publish_batch(self, messages: list[OutboundMessage]) -> None:
        """Publish many envelopes, BATCH_LIMIT per request.

        Per-message retries and delay are kept. A queue without a batch
        endpoint gets the messages one by one instead.
        """
        for start in range(0, len(messages), BATCH_LIMIT):
            chunk = messages[start:start + BATCH_LIMIT]
            batch = [
                {
                    "destination": webhook_url(self.settings.webhook_base_url, m.topic),
                    "headers": {
                        **self._queue_headers(m.retries, m.delay_ms),
                        **self._forward_headers(m.envelope),
                    },
                    "body": json.dumps(m.envelope.to_wire()),
                }
                for m in chunk
            ]
            try:
                resp = await self.client.post(
                    f"{self.settings.qstash_url}/v2/batch",
                    json=batch,
                    headers=self._auth_headers(),
                )
            except httpx.HTTPError as e:
                raise PublishError(f"batch publish failed: {e}") from e

            if resp.status_code in NO_BATCH_STATUSES:
                logger.info("Queue has no batch endpoint, publishing %d messages one by one", len(chunk))
                for m in chunk:
                    await self.publish(m.topic, m.envelope, m.retries, m.delay_ms)
                continue

            try:
                resp.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise PublishError(f"batch publish failed: {e}") from e
            logger.info("Published batch of %d events", len(chunk))

    async def publish_auto_route(self, envelope: Envelope, **options: Any) -> str | None:
        return await self.publish(route_for(envelope), envelope, **options)

    # ── Domain publishers ────────────────────────

    async def publish_checkout_command(
        self, payload: CheckoutCommandPayload, correlation_id: str | None = None
    ) -> Envelope:
        envelope = wrap(EventType.CHECKOUT, payload, "checkout-api", correlation_id)
        await self.publish(Topic.COMMANDS, envelope)
        return envelope

    async def publish_order_created(
        self, payload: OrderPayload, correlation_id: str | None = None, event_id: str | None = None
    ) -> Envelope:
        envelope = wrap(EventType.ORDER_CREATED, payload, "orders-service", correlation_id, event_id)
        await self.publish(Topic.ORDERS, envelope)
        return envelope

    async def publish_email_notification(
        self, payload: EmailNotificationPayload, correlation_id: str | None = None, event_id: str | None = None
    ) -> Envelope:
        envelope = wrap(EventType.EMAIL, payload, "orders-service", correlation_id, event_id)
        await self.publish(Topic.NOTIFICATIONS, envelope)
        return envelope

    async def publish_stock_update(
        self, payload: StockUpdatePayload, correlation_id: str | None = None, event_id: str | None = None
    ) -> Envelope:
        envelope = wrap(EventType.STOCK_UPDATED, payload, "orders-service", correlation_id, event_id)
        await self.publish(Topic.INVENTORY, envelope)
        return envelope

    async def publish_audit_log(
        self, payload: AuditLogPayload, correlation_id: str | None = None, event_id: str | None = None
    ) -> Envelope:
        envelope = wrap(EventType.AUDIT, payload, "api", correlation_id, event_id)
        await self.publish(Topic.ANALYTICS, envelope)
        return envelope

    async def publish_dead_letter(
        self, topic: Topic, failed: Envelope, error: Exception, retry_count: int = 0
    ) -> Envelope:
        """Re-emit a permanently failed event to analytics for follow-up.

        The dead-letter id derives from the failed event id, so redeliveries
        of the same failure collapse into one dead letter downstream.
        """
        payload = DeadLetterPayload(
            original_topic=topic.value,
            original_event_type=failed.event_type,
            original_event=failed.to_wire(),
            error=str(error),
            failed_at=datetime.now(timezone.utc),
            retry_count=retry_count,
        )
        envelope = wrap(
            EventType.DEAD_LETTER,
            payload,
            "consumer-dlq",
            failed.chain_id,
            derived_event_id(failed.event_id, EventType.DEAD_LETTER),
        )
        await self.publish(Topic.ANALYTICS, envelope)
        logger.warning("Sent %s (%s) to dead letter: %s", failed.event_type, failed.event_id, error)
        return envelope
