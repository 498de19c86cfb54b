"""
In-process bus for local development and tests.

Clients attached to the same :class:`InMemoryBroker` behave like nodes on one
shared bus: every published message is queued for each client with a
matching pattern, the publisher included, and nothing is replayed to clients
that subscribe later.
"""

import asyncio
import fnmatch
from typing import Any, Dict, List, Optional, Set, Tuple

from shared.errors import BusConnectionError, BusPublishError
from shared.logging import get_logger
from .base import BusMessage, MessageHandler, deliver, encode_payload


class InMemoryBroker:
    """Fan-out hub shared by in-process bus clients."""

    def __init__(self):
        self._clients: Set["InMemoryBusClient"] = set()

    def attach(self, client: "InMemoryBusClient"):
        self._clients.add(client)

    def detach(self, client: "InMemoryBusClient"):
        self._clients.discard(client)

    async def publish(self, topic: str, data: bytes) -> int:
        """Queue raw ``data`` for every matching subscription."""
        receivers = 0
        for client in list(self._clients):
            receivers += client.enqueue(topic, data)
        return receivers


class InMemoryBusClient:
    """Bus client backed by an :class:`InMemoryBroker`."""

    def __init__(self, broker: InMemoryBroker, node_id: str):
        self.broker = broker
        self.node_id = node_id
        self.logger = get_logger("order_cache.bus.memory")
        self.message_handlers: Dict[str, MessageHandler] = {}
        self.running = False
        self._queue: "asyncio.Queue[Tuple[str, str, bytes]]" = asyncio.Queue()
        self._listener_task: Optional[asyncio.Task] = None

    async def start(self):
        self.broker.attach(self)
        self.running = True
        self.logger.info("Bus client started", node_id=self.node_id, backend="memory")

    async def stop(self):
        self.running = False
        self.broker.detach(self)
        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None
        self.logger.info("Bus client stopped", node_id=self.node_id)

    async def subscribe(self, pattern: str, handler: MessageHandler):
        if not self.running:
            raise BusConnectionError("Bus client not started")

        if pattern in self.message_handlers:
            self.logger.warning("Already subscribed to pattern", pattern=pattern)
            return

        self.message_handlers[pattern] = handler
        if self._listener_task is None:
            self._listener_task = asyncio.create_task(self._listen_loop())
        self.logger.info("Subscribed to pattern", pattern=pattern)

    async def publish(self, topic: str, payload: Dict[str, Any]) -> int:
        if not self.running:
            raise BusPublishError("Bus client not started", details={"topic": topic})
        return await self.broker.publish(topic, encode_payload(payload))

    def enqueue(self, topic: str, data: bytes) -> int:
        """Queue a message once per matching pattern, as PSUBSCRIBE does."""
        matched = 0
        for pattern in self.message_handlers:
            if fnmatch.fnmatchcase(topic, pattern):
                self._queue.put_nowait((pattern, topic, data))
                matched += 1
        return matched

    async def drain(self):
        """Wait until every queued message has been handled."""
        await self._queue.join()

    async def _listen_loop(self):
        while self.running:
            pattern, topic, data = await self._queue.get()
            try:
                handler = self.message_handlers.get(pattern)
                if handler is not None:
                    await deliver(handler, BusMessage(topic=topic, pattern=pattern, data=data), self.logger)
            finally:
                self._queue.task_done()

    def get_subscribed_patterns(self) -> List[str]:
        return list(self.message_handlers)

    def is_running(self) -> bool:
        return self.running
