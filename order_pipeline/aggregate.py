"""
Order Pipeline — order status rules

State transitions:
    PENDING → PROCESSING → SHIPPED → DELIVERED
    PENDING / PROCESSING → CANCELLED
"""

from enum import Enum

from .errors import InvalidStatusTransition
from .events import EventType


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


ALLOWED_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

STATUS_FOR_EVENT: dict[str, OrderStatus] = {
    EventType.ORDER_PROCESSING: OrderStatus.PROCESSING,
    EventType.ORDER_SHIPPED: OrderStatus.SHIPPED,
    EventType.ORDER_DELIVERED: OrderStatus.DELIVERED,
    EventType.ORDER_CANCELLED: OrderStatus.CANCELLED,
}


def check_transition(current: str, target: OrderStatus) -> bool:
    """Validate moving an order from ``current`` to ``target``.

    Returns False when the order is already in ``target`` (a replayed
    status event is a no-op), raises InvalidStatusTransition when the move
    is not allowed.
    """
    current_status = OrderStatus(current)
    if current_status == target:
        return False
    if target not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidStatusTransition(
            f"cannot move order from {current_status.value} to {target.value}"
        )
    return True
