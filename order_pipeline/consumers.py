"""
Order Pipeline — webhook consumers

One POST endpoint per topic. Every delivery walks the same gates:

    received → signature verified → dedup checked → handled → acknowledged

and can be rejected at any gate. The status code tells the queue whether
to retry: 4xx when no retry can help (bad signature, malformed body,
business rule violation after dead-lettering), 5xx for transient
failures, 200 for success, duplicates and event types a topic does not
handle.
"""

import asyncio
import logging
from collections.abc import Mapping

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .context import PipelineContext
from .errors import (
    AuthenticationFailure,
    BusinessInvariantViolation,
    MalformedMessage,
    PipelineError,
    PublishError,
    SigningKeysNotConfigured,
    TransientProcessingFailure,
)
from .events import Envelope
from .handlers import HANDLERS, Delivery, Handler
from .routing import Topic
from .signature import SIGNATURE_HEADER

logger = logging.getLogger(__name__)


def delivery_from_headers(headers: Mapping[str, str]) -> Delivery:
    try:
        retry_count = int(headers.get("upstash-retried") or 0)
    except ValueError:
        retry_count = 0
    return Delivery(retry_count=retry_count, message_id=headers.get("upstash-message-id"))


def parse_envelope(body: bytes) -> Envelope:
    try:
        return Envelope.model_validate_json(body)
    except ValidationError as e:
        raise MalformedMessage(f"Malformed event envelope: {e.error_count()} error(s)") from e


def _error(status_code: int, error: str, details: str) -> tuple[int, dict]:
    return status_code, {"success": False, "error": error, "details": details}


class WebhookConsumer:
    def __init__(self, topic: Topic, handlers: dict[str, Handler]):
        self.topic = topic
        self.handlers = handlers
        self.label = f"{topic.value.capitalize()} Webhook"

    async def consume(
        self, ctx: PipelineContext, body: bytes, headers: Mapping[str, str]
    ) -> tuple[int, dict]:
        # Signature first, on the raw bytes, before anything is parsed.
        try:
            ctx.verifier.verify(body, headers.get(SIGNATURE_HEADER.lower()))
            envelope = parse_envelope(body)
        except AuthenticationFailure as e:
            logger.warning("[%s] Rejected delivery: %s", self.label, e)
            return _error(e.status_code, "Invalid signature", str(e))
        except MalformedMessage as e:
            logger.warning("[%s] Rejected delivery: %s", self.label, e)
            return _error(e.status_code, "Malformed message", str(e))
        except SigningKeysNotConfigured as e:
            logger.error("[%s] Cannot verify delivery: %s", self.label, e)
            return _error(e.status_code, "Signing keys not configured", str(e))

        delivery = delivery_from_headers(headers)
        logger.info(
            "[%s] Received %s %s (retry: %d)",
            self.label, envelope.event_type, envelope.event_id, delivery.retry_count,
        )
        ack = {"success": True, "eventId": envelope.event_id, "eventType": envelope.event_type}

        if await ctx.store.seen(envelope.event_id):
            logger.info("[%s] Event %s already processed (duplicate)", self.label, envelope.event_id)
            return 200, {**ack, "duplicate": True}

        handler = self.handlers.get(envelope.event_type)
        if handler is None:
            logger.warning("[%s] Unknown event type: %s, ignoring", self.label, envelope.event_type)
            return 200, {**ack, "duplicate": False, "ignored": True}

        try:
            result = await asyncio.wait_for(
                handler(ctx, envelope, delivery), ctx.settings.webhook_timeout_seconds
            )
        except BusinessInvariantViolation as e:
            return await self._dead_letter(ctx, envelope, delivery, e)
        except MalformedMessage as e:
            logger.warning("[%s] Rejected %s: %s", self.label, envelope.event_id, e)
            return _error(e.status_code, "Malformed message", str(e))
        except asyncio.TimeoutError:
            logger.error("[%s] Timed out processing %s", self.label, envelope.event_id)
            return _error(500, "Processing timed out", envelope.event_id)
        except PipelineError as e:
            logger.error("[%s] Processing %s failed: %s", self.label, envelope.event_id, e)
            return _error(e.status_code, "Processing failed", str(e))
        except Exception as e:
            logger.exception("[%s] Error processing %s", self.label, envelope.event_id)
            return _error(500, "Processing failed", str(e))

        await ctx.store.mark_seen(envelope.event_id)
        return 200, {"duplicate": False, **ack, **result}

    async def _dead_letter(
        self,
        ctx: PipelineContext,
        envelope: Envelope,
        delivery: Delivery,
        error: BusinessInvariantViolation,
    ) -> tuple[int, dict]:
        try:
            await ctx.publisher.publish_dead_letter(self.topic, envelope, error, delivery.retry_count)
        except PublishError as e:
            # Not dead-lettered yet: ask for a retry rather than lose the event.
            logger.error("[%s] Dead letter for %s not published: %s", self.label, envelope.event_id, e)
            return _error(TransientProcessingFailure.status_code, "Processing failed", str(error))

        await ctx.store.mark_seen(envelope.event_id)
        status_code, content = _error(error.status_code, "Business rule violated", str(error))
        return status_code, {**content, "eventId": envelope.event_id, "deadLettered": True}


CONSUMERS: dict[Topic, WebhookConsumer] = {
    topic: WebhookConsumer(topic, HANDLERS[topic]) for topic in Topic
}


def _endpoint(consumer: WebhookConsumer):
    async def receive(request: Request) -> JSONResponse:
        body = await request.body()
        status_code, content = await consumer.consume(
            request.app.state.pipeline, body, request.headers
        )
        return JSONResponse(content, status_code=status_code)

    return receive


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

for _topic, _consumer in CONSUMERS.items():
    router.add_api_route(
        f"/{_topic.value}",
        _endpoint(_consumer),
        methods=["POST"],
        name=f"{_topic.value}_webhook",
    )
