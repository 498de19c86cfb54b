"""
Shared utilities for order cache nodes.

This package aggregates common building blocks consumed by all services:

- config: Node configuration via pydantic-settings
- logging: Structured logging with request/node correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry helpers with backoff
- circuit_breaker: Protection for origin calls
- base_service: FastAPI service skeleton (health, metrics, error mapping)

Do not import from service packages into shared/.
"""
