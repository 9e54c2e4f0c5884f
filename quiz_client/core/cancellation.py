"""Explicit cancellation token shared by a session's timer and debounce scheduler."""

import logging
from typing import Callable

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-way flag: once cancelled it stays cancelled.

    Owners check ``cancelled`` before every state mutation; callbacks
    registered with ``on_cancel`` run synchronously inside ``cancel()``.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def on_cancel(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback %r failed", callback)
