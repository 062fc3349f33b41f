from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Optional

from marketfeed.errors import RateLimitCancelled
from marketfeed.market.clock import Clock, SystemClock

log = logging.getLogger("rate_governor")

DEFAULT_MAX_CALLS = 8
DEFAULT_WINDOW_SECONDS = 60.0


class RateGovernor:
    """
    Global sliding-window limiter for outbound provider calls.

    Every tier refresher, the end-of-day job and the history reload share one
    instance, so the provider budget (8 calls / 60s on the free plan) holds no
    matter how the schedules overlap.

    - call timestamps live in a deque, oldest first
    - entries aged >= window are purged on every access
    - waiters queue on one asyncio.Lock, which is FIFO, so slots are granted
      in arrival order
    """

    def __init__(
        self,
        max_calls: int = DEFAULT_MAX_CALLS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Optional[Clock] = None,
    ) -> None:
        if max_calls < 1:
            raise ValueError("max_calls must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_calls = max_calls
        self.window = timedelta(seconds=window_seconds)
        self._clock = clock or SystemClock()
        self._calls: Deque[datetime] = deque()
        self._lock = asyncio.Lock()

    def _purge(self, now: datetime) -> None:
        limit = now - self.window
        while self._calls and self._calls[0] <= limit:
            self._calls.popleft()

    async def acquire(self, cancel: Optional[asyncio.Event] = None) -> None:
        """
        Wait until one more call fits in the window, then record it.

        If `cancel` is set before a slot is granted, raises RateLimitCancelled
        and records nothing.
        """
        if cancel is None:
            await self._acquire()
            return

        if cancel.is_set():
            raise RateLimitCancelled("rate limit wait cancelled before start")

        grant = asyncio.ensure_future(self._acquire())
        stop = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({grant, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            grant.cancel()
            stop.cancel()
            raise

        if grant in done:
            stop.cancel()
            grant.result()
            return

        grant.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await grant
        raise RateLimitCancelled("rate limit wait cancelled")

    async def _acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock.now()
                self._purge(now)

                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    log.debug(
                        "API call allowed load=%d/%d window=%ss",
                        len(self._calls),
                        self.max_calls,
                        int(self.window.total_seconds()),
                    )
                    return

                wait = (self._calls[0] + self.window - now).total_seconds()
                log.info(
                    "Rate limit reached (%d calls/%ss), waiting %.1fs",
                    self.max_calls,
                    int(self.window.total_seconds()),
                    wait,
                )
                await self._clock.sleep(wait)

    def current_load(self) -> int:
        """Calls recorded inside the trailing window right now."""
        self._purge(self._clock.now())
        return len(self._calls)

    def reset(self) -> None:
        self._calls.clear()
