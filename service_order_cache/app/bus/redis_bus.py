"""
Redis pub/sub bus client.

Subscriptions use PSUBSCRIBE so a glob such as ``cache.orders.*`` receives
every per-key topic. Redis pub/sub has no replay: a node only sees messages
published while it is subscribed, including its own publications.
"""

import asyncio
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import BusConnectionError, BusPublishError
from shared.logging import get_logger
from .base import BusMessage, MessageHandler, deliver, encode_payload


def _as_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class RedisBusClient:
    """Manages the Redis connection, subscriptions and listener task for a node."""

    def __init__(self, redis_url: str, node_id: str, poll_timeout: float = 1.0):
        self.redis_url = redis_url
        self.node_id = node_id
        self.poll_timeout = poll_timeout
        self.logger = get_logger("order_cache.bus.redis")
        self.redis: Optional[redis.Redis] = None
        self.pubsub = None
        self.message_handlers: Dict[str, MessageHandler] = {}
        self.running = False
        self._listener_task: Optional[asyncio.Task] = None

    async def start(self):
        """Open the Redis connection used for publishing and subscribing."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                socket_connect_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
            await self.redis.ping()
            self.pubsub = self.redis.pubsub()
        except Exception as e:
            self.logger.error("Failed to start bus client", url=self.redis_url, error=str(e))
            raise BusConnectionError(str(e), details={"url": self.redis_url}) from e

        self.running = True
        self.logger.info("Bus client started", node_id=self.node_id)

    async def stop(self):
        """Stop the listener and close the connection."""
        self.running = False
        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None

        if self.pubsub is not None:
            await self.pubsub.aclose()
            self.pubsub = None
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
        self.logger.info("Bus client stopped")

    async def subscribe(self, pattern: str, handler: MessageHandler):
        """Subscribe ``handler`` to every topic matching ``pattern``."""
        if self.pubsub is None:
            raise BusConnectionError("Bus client not started")

        if pattern in self.message_handlers:
            self.logger.warning("Already subscribed to pattern", pattern=pattern)
            return

        try:
            await self.pubsub.psubscribe(pattern)
        except RedisError as e:
            self.logger.error("Failed to subscribe", pattern=pattern, error=str(e))
            raise BusConnectionError(str(e), details={"pattern": pattern}) from e

        self.message_handlers[pattern] = handler
        if self._listener_task is None:
            self._listener_task = asyncio.create_task(self._listen_loop())

        self.logger.info("Subscribed to pattern", pattern=pattern)

    async def publish(self, topic: str, payload: Dict[str, Any]) -> int:
        """Publish ``payload`` to ``topic``; returns the receiver count reported by Redis."""
        if self.redis is None:
            raise BusPublishError("Bus client not started", details={"topic": topic})

        try:
            receivers = await self.redis.publish(topic, encode_payload(payload))
        except RedisError as e:
            raise BusPublishError(str(e), details={"topic": topic}) from e

        self.logger.debug("Message published", topic=topic, receivers=receivers)
        return receivers

    async def _listen_loop(self):
        """Read pattern messages and hand them to their handlers in arrival order."""
        while self.running:
            try:
                message = await self.pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=self.poll_timeout
                )
            except RedisError as e:
                self.logger.error("Redis error in listen loop", error=str(e))
                await asyncio.sleep(1)  # Back off on errors
                continue

            if message is None:
                continue

            await self._dispatch(message)

    async def _dispatch(self, message: Dict[str, Any]):
        if message.get("type") != "pmessage":
            return

        pattern = _as_text(message.get("pattern"))
        handler = self.message_handlers.get(pattern)
        if handler is None:
            return

        data = message.get("data")
        bus_message = BusMessage(
            topic=_as_text(message.get("channel")),
            pattern=pattern,
            data=data if isinstance(data, bytes) else _as_text(data).encode("utf-8")
        )
        await deliver(handler, bus_message, self.logger)

    def get_subscribed_patterns(self) -> List[str]:
        """Get list of subscribed patterns."""
        return list(self.message_handlers)

    def is_running(self) -> bool:
        """Check if the client is running."""
        return self.running
