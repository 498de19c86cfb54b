"""
Topic naming for order announcements.
"""

from shared.errors import BusDeliveryError, ValidationError
from ..models import validate_order_id

ORDER_TOPIC_PREFIX = "cache.orders."
ORDER_TOPIC_PATTERN = f"{ORDER_TOPIC_PREFIX}*"


def order_topic(order_id: str) -> str:
    """Topic on which the order is announced."""
    return f"{ORDER_TOPIC_PREFIX}{validate_order_id(order_id)}"


def parse_order_topic(topic: str) -> str:
    """Extract the order id from a ``cache.orders.<key>`` topic."""
    if not topic.startswith(ORDER_TOPIC_PREFIX):
        raise BusDeliveryError("Unexpected topic", details={"topic": topic})

    try:
        return validate_order_id(topic[len(ORDER_TOPIC_PREFIX):])
    except ValidationError as exc:
        raise BusDeliveryError("Malformed order topic", details={"topic": topic}) from exc
