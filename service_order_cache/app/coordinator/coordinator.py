"""
Cache coordinator: resolves order lookups against the local store, the origin
and the bus.

Lookup flow::

    CHECK_LOCAL -> hit -> DONE
                -> miss -> FETCH_ORIGIN -> PERSIST -> PUBLISH -> DONE

A record is written to the store before it is announced, so a lookup on this
node that follows the announcement can never miss. Origin and storage
failures reach the caller and leave nothing behind; bus failures are logged
and never fail a lookup.
"""

import asyncio
import time
from collections import Counter
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from shared.errors import BusDeliveryError, BusPublishError, OriginError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, call_with_retry
from ..bus import BusClient, BusMessage, ORDER_TOPIC_PATTERN, order_topic, parse_order_topic
from ..models import CacheRecord, Order, OrderEnvelope, validate_order_id
from ..origin import OriginFetcher
from ..store import LocalOrderStore
from .single_flight import SingleFlight


class CacheCoordinator:
    """Owns the store, bus and origin handles of one node."""

    def __init__(
        self,
        store: LocalOrderStore,
        bus: BusClient,
        origin: OriginFetcher,
        *,
        node_id: str,
        origin_timeout: Optional[float] = 5.0,
        single_flight: bool = True,
        publish_retry: Optional[RetryConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.bus = bus
        self.origin = origin
        self.node_id = node_id
        self.origin_timeout = origin_timeout
        self.publish_retry = publish_retry or RetryConfig(max_attempts=3, base_delay=0.2, max_delay=2.0)
        self.metrics = metrics
        self.logger = get_logger("order_cache.coordinator")
        self._single_flight = SingleFlight() if single_flight else None
        self._counters: Counter = Counter()

    async def start(self):
        """Subscribe to announcements from every node, this one included."""
        await self.bus.subscribe(ORDER_TOPIC_PATTERN, self.handle_bus_message)
        self.logger.info("Coordinator subscribed", pattern=ORDER_TOPIC_PATTERN, node_id=self.node_id)

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        """Resolve ``order_id``, consulting the origin only on a local miss."""
        key = validate_order_id(order_id)

        value = await self.store.get(key)
        if value is not None:
            self._record("hits", "order_cache_lookups_total", result="hit")
            self.logger.debug("Order found in local cache", order_id=key)
            return value

        self._record("misses", "order_cache_lookups_total", result="miss")
        self.logger.info("Cache miss, resolving order", order_id=key)

        if self._single_flight is None:
            return await self._resolve_miss(key)

        value, shared = await self._single_flight.do(key, lambda: self._resolve_miss(key))
        if shared:
            self._counters["coalesced"] += 1
            self.logger.debug("Joined in-flight resolution", order_id=key)
        return value

    async def _resolve_miss(self, key: str) -> Dict[str, Any]:
        # A bus delivery may have landed since the first check
        value = await self.store.get(key)
        if value is not None:
            self._counters["late_hits"] += 1
            return value

        order = await self._fetch_origin(key)
        record = await self.store.put(
            key,
            order,
            version=time.time(),
            source="origin",
            origin_node=self.node_id
        )
        await self._publish(key, record)
        return record.value

    async def _fetch_origin(self, key: str) -> Dict[str, Any]:
        self._counters["origin_fetches"] += 1
        start = time.perf_counter()
        try:
            raw = await asyncio.wait_for(self.origin.fetch(key), timeout=self.origin_timeout)
        except asyncio.TimeoutError as exc:
            self._record("origin_failures", "order_origin_fetch_total", result="timeout")
            self.logger.error("Origin fetch timed out", order_id=key, timeout=self.origin_timeout)
            raise OriginError(
                "Origin fetch timed out",
                details={"order_id": key, "timeout_seconds": self.origin_timeout}
            ) from exc
        except OriginError as exc:
            self._record("origin_failures", "order_origin_fetch_total", result=exc.code.lower())
            raise
        except Exception as exc:
            self._record("origin_failures", "order_origin_fetch_total", result="error")
            self.logger.error("Origin fetch failed", order_id=key, error=str(exc))
            raise OriginError(str(exc), details={"order_id": key}) from exc
        finally:
            if self.metrics:
                self.metrics.observe_histogram("order_origin_fetch_duration_seconds", time.perf_counter() - start)

        order = self._validate_origin_order(key, raw)
        self._record(None, "order_origin_fetch_total", result="ok")
        return order

    def _validate_origin_order(self, key: str, raw: Any) -> Dict[str, Any]:
        try:
            order = Order.model_validate(raw)
        except PydanticValidationError as exc:
            self._record("origin_failures", "order_origin_fetch_total", result="invalid")
            raise OriginError(
                "Origin returned an invalid order",
                details={"order_id": key, "error": str(exc)}
            ) from exc

        if order.id != key:
            self._record("origin_failures", "order_origin_fetch_total", result="invalid")
            raise OriginError(
                "Origin returned a different order",
                details={"order_id": key, "returned_id": order.id}
            )
        return order.model_dump()

    async def _publish(self, key: str, record: CacheRecord) -> bool:
        topic = order_topic(key)
        envelope = OrderEnvelope(order=record.value, version=record.version, origin_node=self.node_id)

        try:
            receivers = await call_with_retry(
                self.bus.publish,
                topic,
                envelope.model_dump(),
                config=self.publish_retry,
                exceptions=(BusPublishError,),
                operation="bus_publish"
            )
        except RetryError as exc:
            self._record("publish_failures", "order_bus_publish_total", result="failed")
            self.logger.warning(
                "Publish failed, peers will resolve the order themselves",
                order_id=key,
                topic=topic,
                attempts=exc.attempts,
                error=str(exc.last_exception)
            )
            return False
        except Exception as exc:
            self._record("publish_failures", "order_bus_publish_total", result="failed")
            self.logger.warning("Publish failed", order_id=key, topic=topic, error=str(exc))
            return False

        self._record("publishes", "order_bus_publish_total", result="ok")
        self.logger.info("Published order", order_id=key, topic=topic, receivers=receivers)
        return True

    async def handle_bus_message(self, message: BusMessage):
        """Apply an announcement to the local store.

        The key comes from the topic, never from the payload. Malformed
        messages raise BusDeliveryError for the bus client to log and drop.
        """
        try:
            key = parse_order_topic(message.topic)
            envelope = self._parse_envelope(message.decode_json())
            order = self._validate_delivered_order(key, envelope.order)
        except BusDeliveryError:
            self._record("bus_rejected", "order_bus_deliveries_total", result="rejected")
            raise

        applied = await self.store.put_if_newer(
            key,
            order,
            version=envelope.version,
            source="bus",
            origin_node=envelope.origin_node
        )

        if applied:
            self._record("bus_applied", "order_bus_deliveries_total", result="applied")
            self.logger.debug(
                "Applied bus delivery",
                order_id=key,
                origin_node=envelope.origin_node,
                version=envelope.version
            )
        else:
            self._record("bus_ignored", "order_bus_deliveries_total", result="stale")

    @staticmethod
    def _parse_envelope(payload: Any) -> OrderEnvelope:
        if not isinstance(payload, dict):
            raise BusDeliveryError("Payload is not an object")

        try:
            if "order" in payload:
                return OrderEnvelope.model_validate(payload)
            # Bare order as published by older nodes
            return OrderEnvelope(order=payload)
        except PydanticValidationError as exc:
            raise BusDeliveryError("Malformed envelope", details={"error": str(exc)}) from exc

    @staticmethod
    def _validate_delivered_order(key: str, raw: Dict[str, Any]) -> Dict[str, Any]:
        try:
            order = Order.model_validate(raw)
        except PydanticValidationError as exc:
            raise BusDeliveryError("Malformed order", details={"order_id": key, "error": str(exc)}) from exc

        if order.id != key:
            raise BusDeliveryError(
                "Order id does not match topic",
                details={"order_id": key, "payload_id": order.id}
            )
        return order.model_dump()

    def _record(self, counter: Optional[str], metric: str, **labels):
        if counter:
            self._counters[counter] += 1
        if self.metrics:
            self.metrics.increment_counter(metric, **labels)

    def stats(self) -> Dict[str, Any]:
        """Coordinator counters for the stats endpoint."""
        counters = {
            name: self._counters.get(name, 0)
            for name in (
                "hits", "misses", "late_hits", "coalesced", "origin_fetches", "origin_failures",
                "publishes", "publish_failures", "bus_applied", "bus_ignored", "bus_rejected",
            )
        }
        return {
            "node_id": self.node_id,
            "single_flight": self._single_flight is not None,
            "in_flight": self._single_flight.in_flight() if self._single_flight else 0,
            "counters": counters,
        }
