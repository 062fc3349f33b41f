from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class Tier(str, Enum):
    """
    Refresh tier of a symbol.

    PREMIUM:  most traded names, refreshed most often
    STANDARD: blue chips and sector ETFs
    EXTENDED: thematic ETFs and the long tail
    """
    PREMIUM = "premium"
    STANDARD = "standard"
    EXTENDED = "extended"


def _as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


@dataclass(frozen=True)
class Quote:
    """
    Quote = one snapshot of a symbol as returned by the provider.

    price: last traded price (the provider's "close" field)
    previous_close: prior session close, used for change/change_percent
    timestamp: when we captured the quote (UTC)
    tier: refresh tier the symbol belongs to
    """
    symbol: str
    price: float
    open: float
    high: float
    low: float
    close: float
    volume: Optional[int]
    previous_close: float
    timestamp: datetime
    tier: Tier

    def __post_init__(self) -> None:
        object.__setattr__(self, "symbol", self.symbol.strip().upper())
        object.__setattr__(self, "timestamp", _as_utc(self.timestamp))

    @property
    def change(self) -> float:
        return round(self.price - self.previous_close, 4)

    @property
    def change_percent(self) -> float:
        if self.previous_close == 0:
            return 0.0
        return round((self.price - self.previous_close) / self.previous_close * 100, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "previous_close": self.previous_close,
            "change": self.change,
            "change_percent": self.change_percent,
            "timestamp": self.timestamp.isoformat(),
            "tier": self.tier.value,
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "Quote":
        ts = row["timestamp"]
        if not isinstance(ts, datetime):
            ts = datetime.fromisoformat(str(ts))
        volume = row.get("volume")
        return cls(
            symbol=row["symbol"],
            price=float(row["price"]),
            open=float(row["open"]),
            high=float(row["high"]),
            low=float(row["low"]),
            close=float(row["close"]),
            volume=int(volume) if volume is not None else None,
            previous_close=float(row["previous_close"]),
            timestamp=ts,
            tier=Tier(row["tier"]),
        )
