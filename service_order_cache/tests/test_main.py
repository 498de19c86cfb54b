"""
Unit tests for the order cache service endpoints.
"""

import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch
from fastapi.testclient import TestClient

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_order_cache.app.bus import InMemoryBroker
from service_order_cache.app.main import OrderCacheService, create_app
from service_order_cache.app.origin import HttpOriginFetcher, StubOriginFetcher
from shared.config import get_config
from shared.errors import OriginError, StorageError


class TestOrderCacheService:
    """Test cases for OrderCacheService."""

    @pytest.fixture
    def config(self, tmp_path):
        """Service config with an in-process bus and a temporary store."""
        return get_config(
            "order_cache",
            8445,
            node_id="node-test",
            bus_backend="memory",
            storage_root=str(tmp_path),
            origin_backend="stub"
        )

    @pytest.fixture
    def origin(self):
        return StubOriginFetcher(missing_ids=["404"])

    @pytest.fixture
    def service(self, config, origin):
        return OrderCacheService(config, origin=origin, broker=InMemoryBroker())

    @pytest.fixture
    def client(self, service):
        """Test client with the service lifespan running."""
        with TestClient(service.app) as client:
            yield client

    def test_root_endpoint(self, client):
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "order_cache"
        assert data["node_id"] == "node-test"
        assert data["operations"] == ["getOrder"]

    def test_get_order(self, client, origin):
        """Test that a miss is resolved from the origin and then served locally."""
        response = client.get("/orders/42")
        assert response.status_code == 200
        assert response.json() == {
            "id": "42",
            "customer": "John Doe",
            "product": "Laptop",
            "quantity": 2,
            "status": "shipped",
        }

        second = client.get("/orders/42")
        assert second.status_code == 200
        assert second.json() == response.json()
        assert origin.calls == 1

    def test_get_order_invalid_id(self, client, origin):
        response = client.get("/orders/bad.id")
        assert response.status_code == 400
        data = response.json()
        assert data["code"] == "VALIDATION_ERROR"
        assert origin.calls == 0

    def test_get_order_id_with_trailing_newline(self, client, origin):
        response = client.get("/orders/42%0A")
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert origin.calls == 0

    def test_get_order_not_found(self, client, service):
        response = client.get("/orders/404")
        assert response.status_code == 404
        assert response.json()["code"] == "ORDER_NOT_FOUND"

    def test_get_order_origin_failure(self, client, service):
        failing = MagicMock()
        failing.fetch = AsyncMock(side_effect=OriginError("origin down"))
        service.coordinator.origin = failing

        response = client.get("/orders/42")
        assert response.status_code == 502
        assert response.json()["code"] == "ORIGIN_ERROR"

    def test_get_order_storage_failure(self, client, service):
        with patch.object(service.store, "put", AsyncMock(side_effect=StorageError("read-only filesystem"))):
            response = client.get("/orders/42")

        assert response.status_code == 500
        assert response.json()["code"] == "STORAGE_ERROR"

    def test_error_response_carries_request_id(self, client):
        response = client.get("/orders/bad.id", headers={"x-request-id": "req-123"})
        assert response.headers["x-request-id"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_stats_endpoint(self, client):
        client.get("/orders/42")
        client.get("/orders/42")

        response = client.get("/stats")
        assert response.status_code == 200
        data = response.json()
        assert data["coordinator"]["node_id"] == "node-test"
        assert data["coordinator"]["counters"]["hits"] == 1
        assert data["coordinator"]["counters"]["misses"] == 1
        assert data["store"]["records"] == 1
        assert data["bus"]["running"] is True
        assert data["bus"]["patterns"] == ["cache.orders.*"]
        assert data["origin"] == {"backend": "stub", "circuit_breaker": None}

    def test_stats_reports_origin_breaker(self, config, tmp_path):
        origin = HttpOriginFetcher.within_budget(
            "http://orders.internal",
            1.0,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"id": "42"}))
        )
        service = OrderCacheService(config, origin=origin, broker=InMemoryBroker())

        with TestClient(service.app) as client:
            assert client.get("/orders/42").status_code == 200
            data = client.get("/stats").json()

        breaker = data["origin"]["circuit_breaker"]
        assert breaker["state"] == "closed"
        assert breaker["failure_count"] == 0

    def test_health_endpoint(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "order_cache"
        assert data["status"] == "ok"
        assert data["dependencies"] == {"store": "ok", "bus": "ok"}

    def test_health_degraded_when_bus_down(self, client, service):
        with patch.object(service.bus, "is_running", return_value=False):
            response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["dependencies"]["bus"] == "error"

    def test_metrics_endpoint(self, client):
        client.get("/orders/42")

        response = client.get("/metrics")
        assert response.status_code == 200
        assert "order_cache_lookups_total" in response.text
        assert "http_requests_total" in response.text

    def test_create_app(self, config):
        app = create_app(config)
        assert app.title == "Order Cache Service"
