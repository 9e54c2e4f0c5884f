"""Per-key debounce on the running event loop.

Each key gets its own quiet-interval timer: rescheduling a key restarts
only that key's timer, so edits to one question never delay or swallow
the save of another. A fired callback runs as a task and is not
cancelled by later reschedules.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Hashable, TypeVar

from quiz_client.core.cancellation import CancellationToken

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class Debouncer(Generic[K]):
    def __init__(
        self,
        delay: float,
        callback: Callable[[K], Awaitable[None]],
        token: CancellationToken,
    ) -> None:
        self.delay = delay
        self._callback = callback
        self._token = token
        self._handles: dict[K, asyncio.TimerHandle] = {}
        self._running: set[asyncio.Task[None]] = set()
        token.on_cancel(self.cancel_all)

    def schedule(self, key: K) -> None:
        if self._token.cancelled:
            return
        previous = self._handles.pop(key, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._handles[key] = loop.call_later(self.delay, self._fire, key)

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    async def drain(self) -> None:
        """Wait for callbacks that already fired."""
        while self._running:
            await asyncio.gather(*self._running, return_exceptions=True)

    def _fire(self, key: K) -> None:
        self._handles.pop(key, None)
        if self._token.cancelled:
            return
        task = asyncio.ensure_future(self._callback(key))
        self._running.add(task)
        task.add_done_callback(self._reap)

    def _reap(self, task: asyncio.Task[None]) -> None:
        self._running.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Debounced callback failed: %s", exc, exc_info=exc)
