"""
Unit tests for bus clients and topic helpers.
"""

import pytest
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from redis.exceptions import ConnectionError as RedisConnectionError

from service_order_cache.app.bus import (
    BusMessage,
    InMemoryBroker,
    InMemoryBusClient,
    ORDER_TOPIC_PATTERN,
    RedisBusClient,
    create_bus_client,
    order_topic,
    parse_order_topic,
)
from service_order_cache.app.bus.base import deliver
from shared.config import get_config
from shared.errors import BusConnectionError, BusDeliveryError, BusPublishError


class TestTopics:
    """Test cases for topic naming."""

    def test_order_topic(self):
        assert order_topic("123") == "cache.orders.123"

    def test_parse_order_topic(self):
        assert parse_order_topic("cache.orders.abc-1") == "abc-1"

    def test_parse_rejects_foreign_topic(self):
        with pytest.raises(BusDeliveryError):
            parse_order_topic("cache.users.123")

    def test_parse_rejects_invalid_key(self):
        with pytest.raises(BusDeliveryError):
            parse_order_topic("cache.orders.a.b")
        with pytest.raises(BusDeliveryError):
            parse_order_topic("cache.orders.")
        with pytest.raises(BusDeliveryError):
            parse_order_topic("cache.orders.42\n")


class TestBusMessage:
    """Test cases for BusMessage."""

    def test_decode_json(self):
        message = BusMessage(topic="cache.orders.1", pattern=ORDER_TOPIC_PATTERN, data=b'{"id": "1"}')
        assert message.decode_json() == {"id": "1"}

    def test_decode_invalid_json(self):
        message = BusMessage(topic="cache.orders.1", pattern=ORDER_TOPIC_PATTERN, data=b"\x00garbage")
        with pytest.raises(BusDeliveryError):
            message.decode_json()

    @pytest.mark.asyncio
    async def test_deliver_contains_handler_errors(self):
        """Test that handler failures are logged and swallowed per message."""
        logger = MagicMock()
        message = BusMessage(topic="cache.orders.1", pattern=ORDER_TOPIC_PATTERN, data=b"{}")

        assert await deliver(AsyncMock(side_effect=BusDeliveryError("bad")), message, logger) is False
        logger.warning.assert_called_once()

        assert await deliver(AsyncMock(side_effect=RuntimeError("boom")), message, logger) is False
        logger.error.assert_called_once()

        assert await deliver(AsyncMock(), message, logger) is True


class TestInMemoryBus:
    """Test cases for the in-process bus."""

    @pytest.fixture
    def broker(self):
        return InMemoryBroker()

    @pytest.fixture
    async def clients(self, broker):
        """Two started clients on the same broker."""
        first = InMemoryBusClient(broker, node_id="node-a")
        second = InMemoryBusClient(broker, node_id="node-b")
        await first.start()
        await second.start()
        yield first, second
        await first.stop()
        await second.stop()

    @pytest.mark.asyncio
    async def test_fan_out_includes_publisher(self, clients):
        """Test that every subscriber, the publisher included, receives a message."""
        first, second = clients
        received = {"node-a": [], "node-b": []}

        def collector(node_id):
            async def handler(message):
                received[node_id].append((message.topic, message.decode_json()))
            return handler

        await first.subscribe(ORDER_TOPIC_PATTERN, collector("node-a"))
        await second.subscribe(ORDER_TOPIC_PATTERN, collector("node-b"))

        receivers = await first.publish("cache.orders.123", {"id": "123"})
        await first.drain()
        await second.drain()

        assert receivers == 2
        assert received["node-a"] == [("cache.orders.123", {"id": "123"})]
        assert received["node-b"] == [("cache.orders.123", {"id": "123"})]

    @pytest.mark.asyncio
    async def test_pattern_filtering(self, clients):
        """Test that non-matching topics are not delivered."""
        first, _ = clients
        handler = AsyncMock()
        await first.subscribe(ORDER_TOPIC_PATTERN, handler)

        assert await first.publish("cache.users.1", {"id": "1"}) == 0
        await first.drain()

        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_replay_for_late_subscriber(self, broker, clients):
        """Test that messages published before subscribing are not delivered."""
        first, _ = clients
        await first.subscribe(ORDER_TOPIC_PATTERN, AsyncMock())
        await first.publish("cache.orders.1", {"id": "1"})

        late = InMemoryBusClient(broker, node_id="node-c")
        await late.start()
        handler = AsyncMock()
        await late.subscribe(ORDER_TOPIC_PATTERN, handler)
        await late.drain()

        handler.assert_not_called()
        await late.stop()

    @pytest.mark.asyncio
    async def test_delivery_order_per_topic(self, clients):
        """Test that messages on one topic arrive in publish order."""
        first, second = clients
        seen = []

        async def handler(message):
            seen.append(message.decode_json()["n"])

        await second.subscribe(ORDER_TOPIC_PATTERN, handler)

        for n in range(5):
            await first.publish("cache.orders.1", {"n": n})
        await second.drain()

        assert seen == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_handler_failure_does_not_stop_listener(self, clients):
        """Test that a failing message is dropped and later ones still arrive."""
        first, _ = clients
        seen = []

        async def handler(message):
            payload = message.decode_json()
            if payload.get("fail"):
                raise RuntimeError("handler failed")
            seen.append(payload["id"])

        await first.subscribe(ORDER_TOPIC_PATTERN, handler)
        await first.publish("cache.orders.1", {"fail": True})
        await first.publish("cache.orders.2", {"id": "2"})
        await first.drain()

        assert seen == ["2"]

    @pytest.mark.asyncio
    async def test_publish_before_start(self, broker):
        client = InMemoryBusClient(broker, node_id="node-a")
        with pytest.raises(BusPublishError):
            await client.publish("cache.orders.1", {"id": "1"})

    @pytest.mark.asyncio
    async def test_subscribe_before_start(self, broker):
        client = InMemoryBusClient(broker, node_id="node-a")
        with pytest.raises(BusConnectionError):
            await client.subscribe(ORDER_TOPIC_PATTERN, AsyncMock())

    @pytest.mark.asyncio
    async def test_stopped_client_receives_nothing(self, broker, clients):
        first, second = clients
        handler = AsyncMock()
        await second.subscribe(ORDER_TOPIC_PATTERN, handler)
        await second.stop()

        assert await first.publish("cache.orders.1", {"id": "1"}) == 0
        assert not second.is_running()


class TestRedisBusClient:
    """Test cases for RedisBusClient."""

    @pytest.fixture
    def bus_client(self):
        return RedisBusClient("redis://localhost:6379/0", node_id="node-a", poll_timeout=0.01)

    @pytest.fixture
    def pending_messages(self):
        """Messages the mocked pubsub hands out, oldest first."""
        return []

    @pytest.fixture
    def mock_redis(self, pending_messages):
        async def get_message(ignore_subscribe_messages=False, timeout=0.0):
            await asyncio.sleep(0.001)
            return pending_messages.pop(0) if pending_messages else None

        redis_client = MagicMock()
        redis_client.ping = AsyncMock(return_value=True)
        redis_client.publish = AsyncMock(return_value=2)
        redis_client.aclose = AsyncMock()
        pubsub = MagicMock()
        pubsub.psubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        pubsub.get_message = get_message
        redis_client.pubsub.return_value = pubsub
        return redis_client

    @pytest.mark.asyncio
    async def test_start_success(self, bus_client, mock_redis):
        with patch('service_order_cache.app.bus.redis_bus.redis.from_url', return_value=mock_redis):
            await bus_client.start()

        assert bus_client.is_running()
        mock_redis.ping.assert_called_once()

    @pytest.mark.asyncio
    async def test_start_failure(self, bus_client, mock_redis):
        mock_redis.ping.side_effect = RedisConnectionError("connection refused")
        with patch('service_order_cache.app.bus.redis_bus.redis.from_url', return_value=mock_redis):
            with pytest.raises(BusConnectionError):
                await bus_client.start()

        assert not bus_client.is_running()

    @pytest.mark.asyncio
    async def test_subscribe_uses_psubscribe(self, bus_client, mock_redis):
        with patch('service_order_cache.app.bus.redis_bus.redis.from_url', return_value=mock_redis):
            await bus_client.start()
            await bus_client.subscribe(ORDER_TOPIC_PATTERN, AsyncMock())

        mock_redis.pubsub.return_value.psubscribe.assert_called_once_with(ORDER_TOPIC_PATTERN)
        assert bus_client.get_subscribed_patterns() == [ORDER_TOPIC_PATTERN]
        await bus_client.stop()

    @pytest.mark.asyncio
    async def test_subscribe_before_start(self, bus_client):
        with pytest.raises(BusConnectionError):
            await bus_client.subscribe(ORDER_TOPIC_PATTERN, AsyncMock())

    @pytest.mark.asyncio
    async def test_publish(self, bus_client, mock_redis):
        with patch('service_order_cache.app.bus.redis_bus.redis.from_url', return_value=mock_redis):
            await bus_client.start()

        receivers = await bus_client.publish("cache.orders.1", {"order": {"id": "1"}})

        assert receivers == 2
        topic, data = mock_redis.publish.call_args[0]
        assert topic == "cache.orders.1"
        assert json.loads(data) == {"order": {"id": "1"}}

    @pytest.mark.asyncio
    async def test_publish_error(self, bus_client, mock_redis):
        mock_redis.publish.side_effect = RedisConnectionError("gone")
        with patch('service_order_cache.app.bus.redis_bus.redis.from_url', return_value=mock_redis):
            await bus_client.start()

        with pytest.raises(BusPublishError):
            await bus_client.publish("cache.orders.1", {"id": "1"})

    @pytest.mark.asyncio
    async def test_listener_dispatches_pmessage(self, bus_client, mock_redis, pending_messages):
        handled = asyncio.Event()
        received = []

        async def handler(message):
            received.append(message)
            handled.set()

        pending_messages.extend([
            {"type": "pong", "pattern": None, "channel": None, "data": b""},
            {
                "type": "pmessage",
                "pattern": ORDER_TOPIC_PATTERN.encode(),
                "channel": b"cache.orders.42",
                "data": b'{"id": "42"}',
            },
        ])

        with patch('service_order_cache.app.bus.redis_bus.redis.from_url', return_value=mock_redis):
            await bus_client.start()
            await bus_client.subscribe(ORDER_TOPIC_PATTERN, handler)
            await asyncio.wait_for(handled.wait(), timeout=1.0)
            await bus_client.stop()

        assert received[0].topic == "cache.orders.42"
        assert received[0].pattern == ORDER_TOPIC_PATTERN
        assert received[0].decode_json() == {"id": "42"}

    @pytest.mark.asyncio
    async def test_stop_closes_connections(self, bus_client, mock_redis):
        with patch('service_order_cache.app.bus.redis_bus.redis.from_url', return_value=mock_redis):
            await bus_client.start()
        pubsub = mock_redis.pubsub.return_value

        await bus_client.stop()

        pubsub.aclose.assert_called_once()
        mock_redis.aclose.assert_called_once()
        assert not bus_client.is_running()


class TestCreateBusClient:
    """Test cases for backend selection."""

    def test_redis_backend(self):
        config = get_config("order_cache", 8445, bus_backend="redis", node_id="node-a")
        assert isinstance(create_bus_client(config), RedisBusClient)

    def test_memory_backend(self):
        broker = InMemoryBroker()
        config = get_config("order_cache", 8445, bus_backend="memory", node_id="node-a")
        client = create_bus_client(config, broker=broker)

        assert isinstance(client, InMemoryBusClient)
        assert client.broker is broker

    def test_unknown_backend(self):
        config = get_config("order_cache", 8445, bus_backend="carrier-pigeon")
        with pytest.raises(ValueError):
            create_bus_client(config)
