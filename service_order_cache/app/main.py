"""
Order cache node service.
"""

from typing import Optional

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.retry import RetryConfig

from .bus import InMemoryBroker, create_bus_client
from .coordinator import CacheCoordinator
from .models import Order
from .origin import OriginFetcher, create_origin_fetcher
from .store import LocalOrderStore

SERVICE_NAME = "order_cache"
DEFAULT_PORT = 8445


class OrderCacheService(BaseService):
    """Serves getOrder lookups for one node."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        origin: Optional[OriginFetcher] = None,
        broker: Optional[InMemoryBroker] = None,
    ):
        super().__init__(SERVICE_NAME, DEFAULT_PORT, config=config)

        self.store = LocalOrderStore(
            self.config.storage_root,
            ttl_seconds=self.config.cache_ttl_seconds
        )
        self.bus = create_bus_client(self.config, broker=broker)
        self.origin = origin or create_origin_fetcher(self.config)
        self.coordinator = CacheCoordinator(
            self.store,
            self.bus,
            self.origin,
            node_id=self.config.node_id,
            origin_timeout=self.config.origin_timeout_seconds,
            single_flight=self.config.single_flight_enabled,
            publish_retry=RetryConfig(
                max_attempts=self.config.publish_retry_attempts,
                base_delay=self.config.publish_retry_base_delay,
                max_delay=5.0
            ),
            metrics=self.metrics
        )

        self._setup_order_routes()
        self.app.state.order_cache_service = self

    def _setup_order_routes(self):
        """Set up order lookup routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "node_id": self.config.node_id,
                "message": "Order cache node",
                "version": "1.0.0",
                "operations": ["getOrder"]
            }

        @self.app.get("/orders/{order_id}", response_model=Order)
        async def get_order(order_id: str):
            """getOrder: resolve an order from the local cache, falling back to the origin."""
            order = await self.coordinator.get_order(order_id)
            return Order.model_validate(order)

        @self.app.get("/stats")
        async def get_stats():
            """Get coordinator and bus statistics."""
            records = await self.store.count()
            self.metrics.set_gauge("order_store_records", records)
            breaker = getattr(self.origin, "circuit_breaker", None)
            return {
                "origin": {
                    "backend": self.config.origin_backend,
                    "circuit_breaker": breaker.get_state() if breaker else None
                },
                "coordinator": self.coordinator.stats(),
                "store": {
                    "directory": str(self.store.directory),
                    "records": records,
                    "ttl_seconds": self.store.ttl_seconds
                },
                "bus": {
                    "backend": self.config.bus_backend,
                    "running": self.bus.is_running(),
                    "patterns": self.bus.get_subscribed_patterns()
                }
            }

    async def _check_dependencies(self):
        """Check store and bus readiness."""
        return {
            "store": "ok" if await self.store.health_check() else "error",
            "bus": "ok" if self.bus.is_running() else "error",
        }

    async def start(self):
        """Start store, bus and coordinator."""
        await self.store.start()
        await self.bus.start()
        await self.coordinator.start()
        self.logger.info("Order cache node started", node_id=self.config.node_id)

    async def stop(self):
        """Stop bus and origin clients."""
        await self.bus.stop()
        close_origin = getattr(self.origin, "aclose", None)
        if close_origin is not None:
            await close_origin()
        self.logger.info("Order cache node stopped", node_id=self.config.node_id)


def create_app(config: Optional[ServiceConfig] = None):
    """Create order cache service application."""
    service = OrderCacheService(config)
    return service.app


if __name__ == "__main__":
    service = OrderCacheService(get_config(SERVICE_NAME, DEFAULT_PORT))
    service.run()
