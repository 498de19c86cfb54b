"""
Shared error handling for order cache nodes.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from .logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class OrderCacheException(Exception):
    """Base exception for order cache services."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(OrderCacheException):
    """Malformed request input, such as an unusable order key."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class StorageError(OrderCacheException):
    """Local store read or write failure. Never treated as a cache miss."""

    status_code = 500

    def __init__(self, message: str = "Local store error", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORAGE_ERROR", message, details)


class OriginError(OrderCacheException):
    """Origin fetch failed or returned an unusable entity."""

    status_code = 502

    def __init__(self, message: str = "Origin fetch failed", details: Optional[Dict[str, Any]] = None,
                 code: str = "ORIGIN_ERROR"):
        super().__init__(code, message, details)


class OrderNotFoundError(OriginError):
    """Origin reports that the order does not exist."""

    status_code = 404

    def __init__(self, order_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Order {order_id} not found",
            details={"order_id": order_id, **(details or {})},
            code="ORDER_NOT_FOUND"
        )
        self.order_id = order_id


class CircuitOpenError(OriginError):
    """Calls are blocked because a circuit breaker is open."""

    status_code = 503

    def __init__(self, name: str):
        super().__init__(
            f"Circuit breaker '{name}' is open",
            details={"circuit": name},
            code="CIRCUIT_OPEN"
        )


class BusDeliveryError(OrderCacheException):
    """Incoming bus message could not be applied."""

    def __init__(self, message: str = "Bus delivery error", details: Optional[Dict[str, Any]] = None):
        super().__init__("BUS_DELIVERY_ERROR", message, details)


class BusPublishError(OrderCacheException):
    """Outgoing bus publication failed."""

    def __init__(self, message: str = "Bus publish failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("BUS_PUBLISH_ERROR", message, details)


class BusConnectionError(OrderCacheException):
    """Bus client could not be started or used."""

    status_code = 503

    def __init__(self, message: str = "Bus connection error", details: Optional[Dict[str, Any]] = None):
        super().__init__("BUS_CONNECTION_ERROR", message, details)
