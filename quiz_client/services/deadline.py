"""Deadline computation and countdown for timed attempts.

The deadline is fixed once (``started_at + duration``). Every tick
recomputes the remaining time from it instead of decrementing a counter,
so sleeps that run long never accumulate drift.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from quiz_client.core.cancellation import CancellationToken

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_remaining(seconds: float | None) -> str:
    """Render remaining seconds as MM:SS (``--:--`` when unknown)."""
    if seconds is None or seconds < 0:
        return "--:--"
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    return f"{minutes:02d}:{secs:02d}"


@dataclass(frozen=True, slots=True)
class Deadline:
    at: datetime

    @classmethod
    def from_start(cls, started_at: datetime, duration: timedelta) -> "Deadline":
        if started_at.tzinfo is None:
            started_at = started_at.replace(tzinfo=timezone.utc)
        return cls(at=started_at + duration)

    def remaining(self, now: datetime) -> float:
        return max(0.0, (self.at - now).total_seconds())


class DeadlineTimer:
    """Ticks ``on_tick(remaining_seconds)`` and calls ``on_expire()`` exactly once at zero."""

    def __init__(
        self,
        deadline: Deadline,
        *,
        on_tick: Callable[[int], None],
        on_expire: Callable[[], None],
        token: CancellationToken,
        tick_interval: float = 1.0,
        clock: Clock = utcnow,
    ) -> None:
        self.deadline = deadline
        self._on_tick = on_tick
        self._on_expire = on_expire
        self._token = token
        self._interval = tick_interval
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._stopped = False
        self.expired = False
        self.remaining_seconds: int | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Check once right away, then keep ticking until zero or stop.

        An attempt resumed past its deadline expires here, synchronously,
        without waiting for the first tick.
        """
        if self._task is not None or self._stopped or self._token.cancelled:
            return
        self._token.on_cancel(self.stop)
        if self._check():
            return
        self._task = asyncio.ensure_future(self._run())

    def stop(self) -> None:
        self._stopped = True
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        while not self._halted():
            remaining = self.deadline.remaining(self._clock())
            await asyncio.sleep(min(self._interval, remaining))
            if self._halted():
                return
            if self._check():
                return

    def _halted(self) -> bool:
        return self._stopped or self._token.cancelled

    def _check(self) -> bool:
        remaining = self.deadline.remaining(self._clock())
        self.remaining_seconds = int(remaining)
        self._on_tick(self.remaining_seconds)
        if remaining > 0:
            return False
        if not self.expired:
            self.expired = True
            self._stopped = True
            logger.info("Deadline reached")
            self._on_expire()
        return True
