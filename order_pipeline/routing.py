"""
Order Pipeline — topic routing

The queue has no native topics: a topic is a webhook URL. Event types
map to topics by prefix, with analytics as the catch-all so that new
event types are delivered somewhere rather than rejected.
"""

from enum import Enum

from .events import Envelope


class Topic(str, Enum):
    COMMANDS = "commands"
    ORDERS = "orders"
    NOTIFICATIONS = "notifications"
    INVENTORY = "inventory"
    ANALYTICS = "analytics"


# Analytics has no prefix: it is the default arm of topic_for_type.
TOPIC_PREFIXES: dict[Topic, str | None] = {
    Topic.COMMANDS: "command.",
    Topic.ORDERS: "order.",
    Topic.NOTIFICATIONS: "notification.",
    Topic.INVENTORY: "inventory.",
    Topic.ANALYTICS: None,
}


def topic_for_type(event_type: str) -> Topic:
    for topic in Topic:
        prefix = TOPIC_PREFIXES[topic]
        if prefix is not None and event_type.startswith(prefix):
            return topic
    return Topic.ANALYTICS


def route_for(envelope: Envelope) -> Topic:
    return topic_for_type(envelope.event_type)


def webhook_url(base_url: str, topic: Topic) -> str:
    return f"{base_url.rstrip('/')}/api/webhooks/{topic.value}"
