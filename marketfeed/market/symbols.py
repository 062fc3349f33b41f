from __future__ import annotations

from datetime import timedelta
from typing import Dict, Iterable, List, Mapping, Optional

from marketfeed.models.market import Tier

# Tier -> refresh cadence (minutes). Cache TTL is derived from this, never set on its own.
DEFAULT_REFRESH_MINUTES: Dict[Tier, int] = {
    Tier.PREMIUM: 20,
    Tier.STANDARD: 60,
    Tier.EXTENDED: 90,
}

DEFAULT_SYMBOLS: Dict[Tier, List[str]] = {
    Tier.PREMIUM: [
        # Indices
        "SPY", "QQQ", "DAX",
        # Mega cap tech
        "AAPL", "MSFT", "GOOGL", "AMZN", "META", "TSLA", "NVDA", "NFLX", "AMD",
        # Financials
        "JPM", "V", "MA",
        # International tech
        "BABA", "TSM", "ADBE",
        # Enterprise software
        "ORCL", "CRM",
    ],
    Tier.STANDARD: [
        "FXI",
        "WFC", "GS",
        "JNJ", "PFE", "UNH", "ABT", "TMO",
        "WMT", "HD", "MCD", "NKE", "SBUX", "KO", "PG",
        "XOM", "CVX", "COP",
        "DIS", "CMCSA",
        "CSCO", "INTC", "QCOM",
        "IWM", "DIA", "VTI", "XLF", "XLK", "XLE",
        "NVO", "ASML",
        "SMH", "SOXX",
        "PYPL", "SQ", "COIN",
        "SHOP", "UBER", "LYFT",
    ],
    Tier.EXTENDED: [
        "ARKK",
        "TLT", "GLD", "SLV",
        "XBI", "IBB",
        "TAN", "ICLN",
        "XRT",
        "XHB", "ITB",
        "KRE",
        "SPOT", "ROKU",
        "NET", "CRWD", "ZS",
    ],
}

# Symbols that also get long-horizon history and the end-of-day snapshot.
DEFAULT_INDEX_SYMBOLS: List[str] = ["SPY", "QQQ", "DAX", "FXI"]


class SymbolRegistry:
    """
    Static symbol universe.

    symbols(tier)            -> ordered symbol list for the tier
    tier_of(symbol)          -> tier, or None for unknown symbols
    refresh_interval(tier)   -> refresh cadence, also the tier's cache TTL

    Built once at startup; every symbol belongs to exactly one tier.
    """

    def __init__(
        self,
        symbols: Optional[Mapping[Tier, Iterable[str]]] = None,
        refresh_minutes: Optional[Mapping[Tier, int]] = None,
        index_symbols: Optional[Iterable[str]] = None,
    ) -> None:
        symbols = symbols if symbols is not None else DEFAULT_SYMBOLS
        minutes = dict(DEFAULT_REFRESH_MINUTES)
        if refresh_minutes:
            minutes.update(refresh_minutes)

        self._by_tier: Dict[Tier, List[str]] = {}
        self._tier_of: Dict[str, Tier] = {}

        for tier in Tier:
            ordered: List[str] = []
            for raw in symbols.get(tier, []):
                sym = raw.strip().upper()
                if not sym:
                    continue
                owner = self._tier_of.get(sym)
                if owner is not None:
                    raise ValueError(
                        f"symbol {sym} listed in both {owner.value} and {tier.value}"
                    )
                self._tier_of[sym] = tier
                ordered.append(sym)
            self._by_tier[tier] = ordered

        self._intervals: Dict[Tier, timedelta] = {}
        for tier in Tier:
            if minutes[tier] <= 0:
                raise ValueError(f"refresh interval for {tier.value} must be > 0")
            self._intervals[tier] = timedelta(minutes=minutes[tier])

        raw_index = index_symbols if index_symbols is not None else DEFAULT_INDEX_SYMBOLS
        self.index_symbols: List[str] = [s.strip().upper() for s in raw_index if s.strip()]
        unknown = [s for s in self.index_symbols if s not in self._tier_of]
        if unknown:
            raise ValueError(f"index symbols not in any tier: {unknown}")

    def symbols(self, tier: Tier) -> List[str]:
        return list(self._by_tier[tier])

    def tier_of(self, symbol: str) -> Optional[Tier]:
        return self._tier_of.get(symbol.strip().upper())

    def refresh_interval(self, tier: Tier) -> timedelta:
        return self._intervals[tier]

    def all_symbols(self) -> List[str]:
        out: List[str] = []
        for tier in Tier:
            out.extend(self._by_tier[tier])
        return out

    def is_known(self, symbol: str) -> bool:
        return self.tier_of(symbol) is not None

    def is_index(self, symbol: str) -> bool:
        return symbol.strip().upper() in self.index_symbols

    def describe(self) -> str:
        parts = [
            f"{tier.value}={len(self._by_tier[tier])} "
            f"({int(self._intervals[tier].total_seconds() // 60)}min)"
            for tier in Tier
        ]
        return "symbol groups " + " ".join(parts) + f" total={len(self._tier_of)}"
