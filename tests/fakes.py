"""Shared test doubles: a scripted provider, quote factory, temp database."""
from __future__ import annotations

import asyncio
import os
import tempfile
from datetime import datetime, timezone
from typing import Dict, List, Optional

from marketfeed.errors import FetchError, PersistenceError
from marketfeed.market.clock import ManualClock
from marketfeed.market.symbols import SymbolRegistry
from marketfeed.models.market import Quote, Tier
from marketfeed.providers.base import QuoteProvider
from marketfeed.storage.database import Database
from marketfeed.storage.snapshots import SnapshotStore

T0 = datetime(2024, 1, 2, 15, 0, tzinfo=timezone.utc)  # Tuesday 10:00 ET


def make_quote(
    symbol: str,
    price: float,
    tier: Tier = Tier.PREMIUM,
    ts: datetime = T0,
    previous_close: float = 100.0,
    volume: Optional[int] = 1000,
) -> Quote:
    return Quote(
        symbol=symbol,
        price=price,
        open=price,
        high=price,
        low=price,
        close=price,
        volume=volume,
        previous_close=previous_close,
        timestamp=ts,
        tier=tier,
    )


def small_registry() -> SymbolRegistry:
    return SymbolRegistry(
        symbols={
            Tier.PREMIUM: ["AAA", "BBB", "SPY"],
            Tier.STANDARD: ["CCC", "FXI"],
            Tier.EXTENDED: ["DDD"],
        },
        index_symbols=["SPY", "FXI"],
    )


def temp_database() -> Database:
    path = os.path.join(tempfile.mkdtemp(prefix="marketfeed-test-"), "test.db")
    db = Database(path)
    db.init_db()
    return db


class FakeProvider(QuoteProvider):
    """
    Scripted provider.

    prices[symbol]   -> price returned by fetch()
    failures[symbol] -> reason; fetch() raises FetchError
    hang             -> symbols whose fetch never completes
    """

    def __init__(self, registry: SymbolRegistry, clock=None) -> None:
        self.registry = registry
        self.clock = clock
        self.prices: Dict[str, float] = {}
        self.failures: Dict[str, str] = {}
        self.hang: set = set()
        self.history: Dict[str, List[Quote]] = {}
        self.calls: List[str] = []
        self.closed = False

    async def fetch(self, symbol: str) -> Quote:
        self.calls.append(symbol)
        if symbol in self.hang:
            await asyncio.Event().wait()
        if symbol in self.failures:
            raise FetchError(symbol, self.failures[symbol])
        if symbol not in self.prices:
            raise FetchError(symbol, "no scripted price")
        ts = self.clock.now() if self.clock else T0
        return make_quote(symbol, self.prices[symbol], tier=self.registry.tier_of(symbol), ts=ts)

    async def fetch_history(self, symbol: str, days: int) -> List[Quote]:
        self.calls.append(f"history:{symbol}")
        if symbol in self.failures:
            raise FetchError(symbol, self.failures[symbol])
        return list(self.history.get(symbol, []))

    async def close(self) -> None:
        self.closed = True


class BrokenSnapshotStore(SnapshotStore):
    """Snapshot store whose bulk write always fails."""

    def replace_tiers(self, groups, history=()):
        raise PersistenceError("disk full")


class CancellingClock(ManualClock):
    """
    ManualClock whose first blocking sleep sets `cancel` and then parks until
    the waiter gives up. Later sleeps behave normally.
    """

    def __init__(self, cancel: asyncio.Event, start: Optional[datetime] = None) -> None:
        super().__init__(start)
        self.cancel = cancel
        self.armed = True

    async def sleep(self, seconds: float) -> None:
        if self.armed and seconds > 0:
            self.armed = False
            self.cancel.set()
            await asyncio.Event().wait()
        await super().sleep(seconds)
