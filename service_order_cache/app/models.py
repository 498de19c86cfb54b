"""
Order entity and cache record models.
"""

import re
import time
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.errors import ValidationError

ORDER_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,128}")


class Order(BaseModel):
    """Order as returned by getOrder."""

    model_config = ConfigDict(extra="ignore")

    id: str
    customer: Optional[str] = None
    product: Optional[str] = None
    quantity: Optional[int] = None
    status: Optional[str] = None


class CacheRecord(BaseModel):
    """One persisted entry of the local store."""

    key: str
    value: Dict[str, Any]
    version: Optional[float] = None
    source: str = "origin"
    origin_node: Optional[str] = None
    stored_at: float = Field(default_factory=time.time)

    def is_expired(self, ttl_seconds: Optional[float], now: Optional[float] = None) -> bool:
        if ttl_seconds is None:
            return False
        return ((now or time.time()) - self.stored_at) >= ttl_seconds


class OrderEnvelope(BaseModel):
    """Bus payload announcing a resolved order."""

    order: Dict[str, Any]
    version: Optional[float] = None
    origin_node: Optional[str] = None


def validate_order_id(order_id: Any) -> str:
    """Return ``order_id`` if it is usable as a store file name and topic segment."""
    if not isinstance(order_id, str) or not ORDER_ID_PATTERN.fullmatch(order_id):
        raise ValidationError(
            "Order id must be 1-128 characters of letters, digits, '-' or '_'",
            details={"order_id": order_id if isinstance(order_id, str) else repr(order_id)}
        )
    return order_id
