from __future__ import annotations

from datetime import datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from marketfeed.market.clock import Clock, SystemClock

EASTERN = ZoneInfo("America/New_York")
RTH_START = time(9, 30)
RTH_END = time(16, 0)
GRACE_MINUTES = 15

WEEKDAYS = range(0, 5)  # Monday..Friday


class MarketClock:
    """
    Decides whether the venue is open.

    Open = weekday AND local time within [open, close + grace].
    The grace window lets the slower tiers still capture a closing quote
    after the official close.

    Holidays are not modelled; a holiday weekday reads as open.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        tz: ZoneInfo = EASTERN,
        open_time: time = RTH_START,
        close_time: time = RTH_END,
        grace_minutes: int = GRACE_MINUTES,
    ) -> None:
        if grace_minutes < 0:
            raise ValueError("grace_minutes must be >= 0")
        if close_time <= open_time:
            raise ValueError("close_time must be after open_time")
        self._clock = clock or SystemClock()
        self.tz = tz
        self.open_time = open_time
        self.close_time = close_time
        self.grace = timedelta(minutes=grace_minutes)

    def _local(self, now: Optional[datetime]) -> datetime:
        now = now or self._clock.now()
        if now.tzinfo is None:
            raise ValueError("now must be timezone-aware")
        return now.astimezone(self.tz)

    def is_open(self, now: Optional[datetime] = None) -> bool:
        local = self._local(now)
        if local.weekday() not in WEEKDAYS:
            return False

        session_open = local.replace(
            hour=self.open_time.hour, minute=self.open_time.minute, second=0, microsecond=0
        )
        session_close = local.replace(
            hour=self.close_time.hour, minute=self.close_time.minute, second=0, microsecond=0
        )
        return session_open <= local <= session_close + self.grace

    def next_open(self, now: Optional[datetime] = None) -> datetime:
        """Next session open strictly after `now`, in venue time."""
        local = self._local(now)
        candidate = local.replace(
            hour=self.open_time.hour, minute=self.open_time.minute, second=0, microsecond=0
        )
        if candidate <= local:
            candidate += timedelta(days=1)
        while candidate.weekday() not in WEEKDAYS:
            candidate += timedelta(days=1)
        return candidate

    def status_line(self, now: Optional[datetime] = None) -> str:
        local = self._local(now)
        if self.is_open(local):
            state = "OPEN"
        else:
            state = f"CLOSED (next open {self.next_open(local).strftime('%a %H:%M')} {self.tz.key})"
        return f"venue_time={local.strftime('%Y-%m-%d %H:%M')} market={state}"
