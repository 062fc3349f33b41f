from __future__ import annotations

import random
from datetime import timedelta
from typing import Dict, List, Optional

from marketfeed.errors import FetchError
from marketfeed.market.clock import Clock, SystemClock
from marketfeed.market.symbols import SymbolRegistry
from marketfeed.models.market import Quote
from marketfeed.providers.base import QuoteProvider


class SimulatedProvider(QuoteProvider):
    """
    Offline provider for local runs and demos.

    - every symbol starts at `start_price` and does a random walk
      (up to +/- `step_pct` percent per fetch)
    - previous_close is the price the symbol had on the previous fetch
    - symbols in `failing` always raise FetchError
    """

    def __init__(
        self,
        registry: SymbolRegistry,
        clock: Optional[Clock] = None,
        start_price: float = 100.0,
        step_pct: float = 0.5,
        seed: Optional[int] = None,
        failing: Optional[List[str]] = None,
    ) -> None:
        self.registry = registry
        self._clock = clock or SystemClock()
        self.start_price = start_price
        self.step_pct = step_pct
        self._rng = random.Random(seed)
        self._last: Dict[str, float] = {}
        self.failing = {s.upper() for s in failing or []}

    def _step(self, price: float) -> float:
        return round(price * (1 + self._rng.uniform(-self.step_pct, self.step_pct) / 100), 4)

    async def fetch(self, symbol: str) -> Quote:
        symbol = symbol.strip().upper()
        tier = self.registry.tier_of(symbol)
        if tier is None:
            raise FetchError(symbol, "symbol not in any tier")
        if symbol in self.failing:
            raise FetchError(symbol, "simulated failure")

        previous = self._last.get(symbol, self.start_price)
        price = self._step(previous)
        self._last[symbol] = price
        return Quote(
            symbol=symbol,
            price=price,
            open=previous,
            high=max(previous, price),
            low=min(previous, price),
            close=price,
            volume=self._rng.randint(1_000, 50_000),
            previous_close=previous,
            timestamp=self._clock.now(),
            tier=tier,
        )

    async def fetch_history(self, symbol: str, days: int) -> List[Quote]:
        symbol = symbol.strip().upper()
        tier = self.registry.tier_of(symbol)
        if tier is None:
            raise FetchError(symbol, "symbol not in any tier")

        day0 = self._clock.now().replace(hour=0, minute=0, second=0, microsecond=0) - timedelta(days=days)
        out: List[Quote] = []
        price = self.start_price
        for i in range(days):
            prev, price = price, self._step(price)
            out.append(
                Quote(
                    symbol=symbol,
                    price=price,
                    open=prev,
                    high=max(prev, price),
                    low=min(prev, price),
                    close=price,
                    volume=None,
                    previous_close=prev,
                    timestamp=day0 + timedelta(days=i),
                    tier=tier,
                )
            )
        return out
