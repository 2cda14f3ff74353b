"""
Order Pipeline — analytics projection

Audit logs and dead letters delivered to the analytics topic are kept in
analytics_events. The insert ignores an event id it already has, so a
redelivery after an idempotency store outage changes nothing.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .events import Envelope

logger = logging.getLogger(__name__)

INSERT_ANALYTICS_EVENT = text("""
    INSERT INTO analytics_events
        (event_id, event_type, correlation_id, payload, received_at)
    VALUES
        (:event_id, :event_type, :correlation_id, :payload, :received_at)
    ON CONFLICT (event_id) DO NOTHING
""").bindparams(
    bindparam("payload", type_=JSON),
    bindparam("received_at", type_=DateTime(timezone=True)),
)


async def project_analytics_event(session: AsyncSession, envelope: Envelope) -> None:
    await session.execute(
        INSERT_ANALYTICS_EVENT,
        {
            "event_id": envelope.event_id,
            "event_type": envelope.event_type,
            "correlation_id": envelope.correlation_id,
            "payload": envelope.payload,
            "received_at": datetime.now(timezone.utc),
        },
    )
    await session.commit()
    logger.info("Projected %s (%s)", envelope.event_type, envelope.event_id)
