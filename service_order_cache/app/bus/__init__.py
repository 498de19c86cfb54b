"""
Bus package.

Publish/subscribe clients used to announce resolved orders to peer nodes:

- redis_bus: Redis pub/sub backend (production)
- memory: in-process broker and client (local development, tests)
- topics: ``cache.orders.<key>`` naming and parsing
"""

from typing import Optional

from shared.config import BaseConfig
from .base import BusClient, BusMessage, MessageHandler
from .memory import InMemoryBroker, InMemoryBusClient
from .redis_bus import RedisBusClient
from .topics import ORDER_TOPIC_PATTERN, ORDER_TOPIC_PREFIX, order_topic, parse_order_topic

_default_broker = InMemoryBroker()


def create_bus_client(config: BaseConfig, broker: Optional[InMemoryBroker] = None) -> BusClient:
    """Build the bus client selected by ``config.bus_backend``."""
    if config.bus_backend == "redis":
        return RedisBusClient(config.bus_url, node_id=config.node_id)
    if config.bus_backend == "memory":
        return InMemoryBusClient(broker or _default_broker, node_id=config.node_id)
    raise ValueError(f"Unknown bus backend: {config.bus_backend}")


__all__ = [
    "BusClient",
    "BusMessage",
    "MessageHandler",
    "InMemoryBroker",
    "InMemoryBusClient",
    "RedisBusClient",
    "ORDER_TOPIC_PATTERN",
    "ORDER_TOPIC_PREFIX",
    "create_bus_client",
    "order_topic",
    "parse_order_topic",
]
