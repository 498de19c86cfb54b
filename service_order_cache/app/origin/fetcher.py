"""
Origin fetchers: the authoritative source consulted on a confirmed miss.
"""

import asyncio
from typing import Any, Dict, Iterable, Optional, Protocol

import httpx

from shared.circuit_breaker import CircuitBreaker
from shared.errors import OrderNotFoundError, OriginError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, call_with_retry


class OriginFetcher(Protocol):
    """Resolves an order id to its authoritative value."""

    async def fetch(self, order_id: str) -> Dict[str, Any]: ...


class StubOriginFetcher:
    """Deterministic stand-in for the order database.

    Returns the same order for a given id on every call, which is what makes
    duplicate concurrent fetches harmless.
    """

    def __init__(self, latency: float = 0.0, missing_ids: Optional[Iterable[str]] = None):
        self.latency = latency
        self.missing_ids = set(missing_ids or ())
        self.calls = 0
        self.logger = get_logger("order_cache.origin.stub")

    async def fetch(self, order_id: str) -> Dict[str, Any]:
        self.calls += 1
        if self.latency:
            await asyncio.sleep(self.latency)

        if order_id in self.missing_ids:
            raise OrderNotFoundError(order_id)

        self.logger.debug("Order fetched from stub origin", order_id=order_id)
        return {
            "id": order_id,
            "customer": "John Doe",
            "product": "Laptop",
            "quantity": 2,
            "status": "shipped",
        }


class HttpOriginFetcher:
    """Client for an HTTP order service exposing ``GET /orders/{id}``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.logger = get_logger("order_cache.origin.http")
        self.retry_config = retry_config or RetryConfig(
            max_attempts=3,
            base_delay=0.5,
            max_delay=5.0,
            exponential_base=2.0,
            jitter=True
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=3,
            recovery_timeout=30.0,
            ignored_exceptions=(OrderNotFoundError,),
            name="order_origin"
        )
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    @classmethod
    def within_budget(
        cls,
        base_url: str,
        budget: float,
        *,
        attempts: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "HttpOriginFetcher":
        """Build a fetcher whose attempts and backoff all finish inside ``budget`` seconds.

        Attempts share 60% of the budget and backoff waits at most 30%, so a
        hung origin is retried and counted by the breaker before the caller's
        own deadline fires.
        """
        attempts = max(1, attempts)
        return cls(
            base_url,
            timeout=budget * 0.6 / attempts,
            retry_config=RetryConfig(
                max_attempts=attempts,
                base_delay=budget * 0.15 / attempts,
                max_delay=budget * 0.3 / attempts,
                exponential_base=2.0,
                jitter=True
            ),
            transport=transport
        )

    async def fetch(self, order_id: str) -> Dict[str, Any]:
        try:
            return await self.circuit_breaker.call(
                call_with_retry,
                self._request,
                order_id,
                config=self.retry_config,
                exceptions=(httpx.TransportError, asyncio.TimeoutError),
                operation="origin_fetch"
            )
        except OriginError:
            raise
        except RetryError as exc:
            self.logger.error("Origin unreachable", order_id=order_id, error=str(exc.last_exception))
            raise OriginError(
                f"Origin unreachable: {exc.last_exception}",
                details={"order_id": order_id, "attempts": exc.attempts}
            ) from exc

    async def _request(self, order_id: str) -> Dict[str, Any]:
        response = await asyncio.wait_for(self._client.get(f"/orders/{order_id}"), timeout=self.timeout)

        if response.status_code == 200:
            try:
                data = response.json()
            except ValueError as exc:
                raise OriginError("Origin returned invalid JSON", details={"order_id": order_id}) from exc
            self.logger.debug("Order retrieved from origin", order_id=order_id)
            return data

        if response.status_code == 404:
            self.logger.info("Order not found at origin", order_id=order_id)
            raise OrderNotFoundError(order_id)

        self.logger.error(
            "Origin request failed",
            order_id=order_id,
            status_code=response.status_code,
            response=response.text
        )
        raise OriginError(
            f"Unexpected status {response.status_code}",
            details={"order_id": order_id, "status_code": response.status_code}
        )

    async def aclose(self):
        await self._client.aclose()
