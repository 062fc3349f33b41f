from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from marketfeed.errors import CacheUnavailable
from marketfeed.market.clock import Clock, SystemClock
from marketfeed.market.symbols import SymbolRegistry
from marketfeed.models.market import Quote
from marketfeed.storage.cache import QuoteCache
from marketfeed.storage.snapshots import SnapshotStore
from marketfeed.storage.timeseries import RETENTION, QuoteSeries

log = logging.getLogger("market_data")


class MarketDataService:
    """
    Read side used by the API and other in-process consumers.

    current quote: cache -> durable snapshot -> back-fill cache (best effort)
    history:       intraday series when the range starts inside the rolling
                   24h window, durable history table otherwise
    """

    def __init__(
        self,
        registry: SymbolRegistry,
        snapshots: SnapshotStore,
        cache: Optional[QuoteCache],
        series: QuoteSeries,
        clock: Optional[Clock] = None,
    ) -> None:
        self.registry = registry
        self.snapshots = snapshots
        self.cache = cache
        self.series = series
        self._clock = clock or SystemClock()
        self.retention = getattr(series, "retention", RETENTION)

    def get_current_quote(self, symbol: str) -> Optional[Quote]:
        symbol = symbol.strip().upper()
        tier = self.registry.tier_of(symbol)
        if tier is None:
            return None

        if self.cache is not None:
            try:
                cached = self.cache.get(tier, symbol)
            except CacheUnavailable as e:
                log.warning("Cache read failed symbol=%s error=%s", symbol, e)
                cached = None
            if cached is not None:
                return cached

        quote = self.snapshots.latest(symbol)
        if quote is None:
            return None

        # Back-fill during a fetch window is allowed: the commit evicts the tier again.
        if self.cache is not None:
            try:
                self.cache.put(tier, symbol, quote)
            except CacheUnavailable as e:
                log.warning("Cache back-fill failed symbol=%s error=%s", symbol, e)
        return quote

    def get_quotes(self, symbols: Iterable[str]) -> Dict[str, Quote]:
        out: Dict[str, Quote] = {}
        for symbol in symbols:
            quote = self.get_current_quote(symbol)
            if quote is not None:
                out[quote.symbol] = quote
        return out

    def get_indices(self) -> Dict[str, Quote]:
        return self.get_quotes(self.registry.index_symbols)

    def get_history(self, symbol: str, start: datetime, end: datetime) -> List[Quote]:
        """Quotes for start <= timestamp <= end, oldest first."""
        if start.tzinfo is None or end.tzinfo is None:
            raise ValueError("start and end must be timezone-aware")
        symbol = symbol.strip().upper()
        if end < start or not self.registry.is_known(symbol):
            return []

        if start >= self._clock.now() - self.retention:
            try:
                return [p.quote for p in self.series.range_query(symbol, start, end)]
            except CacheUnavailable as e:
                log.warning("Series read failed symbol=%s error=%s, using durable history", symbol, e)

        return self.snapshots.history(symbol, start, end)

    def is_available(self, symbol: str) -> bool:
        return self.registry.is_known(symbol.strip().upper())

    def available_symbols(self) -> List[str]:
        return self.registry.all_symbols()
