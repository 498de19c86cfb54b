"""
Common bus types shared by the Redis and in-process backends.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Protocol

from shared.errors import BusDeliveryError


@dataclass
class BusMessage:
    """Message delivered to a subscription handler."""
    topic: str
    pattern: str
    data: bytes
    received_at: float = field(default_factory=time.time)

    def decode_json(self) -> Any:
        """Decode the payload, raising BusDeliveryError when it is not JSON."""
        try:
            return json.loads(self.data)
        except (TypeError, ValueError) as exc:
            raise BusDeliveryError(
                "Undecodable payload",
                details={"topic": self.topic, "error": str(exc)}
            ) from exc


MessageHandler = Callable[[BusMessage], Awaitable[None]]


class BusClient(Protocol):
    """Publish/subscribe client used by the cache coordinator."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def subscribe(self, pattern: str, handler: MessageHandler) -> None: ...

    async def publish(self, topic: str, payload: Dict[str, Any]) -> int: ...

    def is_running(self) -> bool: ...

    def get_subscribed_patterns(self) -> List[str]: ...


def encode_payload(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


async def deliver(handler: MessageHandler, message: BusMessage, logger) -> bool:
    """Run ``handler`` for one message; failures are logged and the message dropped."""
    try:
        await handler(message)
        return True
    except BusDeliveryError as e:
        logger.warning(
            "Dropping malformed bus message",
            topic=message.topic,
            error=e.message,
            details=e.details
        )
    except Exception as e:
        logger.error(
            "Error processing bus message",
            topic=message.topic,
            error=str(e),
            exc_info=True
        )
    return False
