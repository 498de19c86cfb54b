"""
Per-key coalescing of concurrent resolutions.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Tuple


class SingleFlight:
    """Runs at most one resolution per key at a time.

    The first caller starts the work as a task; callers arriving while it is
    in flight await the same task. Cancelling a caller does not cancel the
    shared work. The key is released as soon as the task finishes, so a
    failed resolution is never reused.
    """

    def __init__(self):
        self._inflight: Dict[str, asyncio.Task] = {}

    async def do(self, key: str, func: Callable[[], Awaitable[Any]]) -> Tuple[Any, bool]:
        """Return ``(result, shared)``; ``shared`` is True for callers that joined existing work."""
        task = self._inflight.get(key)
        shared = task is not None
        if task is None:
            task = asyncio.create_task(func())
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))

        return await asyncio.shield(task), shared

    def in_flight(self) -> int:
        return len(self._inflight)

    def _forget(self, key: str, task: asyncio.Task):
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Marks the exception retrieved when nobody is left waiting
            task.exception()
