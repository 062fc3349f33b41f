from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Clock(Protocol):
    """Time source shared by the governor, the market clock and the scheduler."""

    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def now(self) -> datetime:
        return utcnow()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock:
    """
    Clock for tests and simulations.

    Time only moves when someone sleeps or calls advance(); a sleep jumps the
    clock forward by the requested amount and yields once to the event loop,
    so code that "waits 60s" finishes instantly with now() 60s later.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        start = start or datetime(2024, 1, 2, 15, 0, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> datetime:
        self._now = self._now + delta
        return self._now

    def set(self, when: datetime) -> None:
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        self._now = when

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self._now = self._now + timedelta(seconds=seconds)
        await asyncio.sleep(0)
