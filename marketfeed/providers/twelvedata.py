from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

import httpx

from marketfeed.errors import FetchError
from marketfeed.market.clock import Clock, SystemClock
from marketfeed.market.symbols import SymbolRegistry
from marketfeed.models.market import Quote
from marketfeed.providers.base import QuoteProvider

log = logging.getLogger("twelvedata_provider")

DEFAULT_BASE_URL = "https://api.twelvedata.com"


def _num(raw: Any) -> Optional[float]:
    if raw is None or raw == "":
        return None
    return float(raw)


class TwelveDataProvider(QuoteProvider):
    """
    TwelveData REST provider.

    quote:        GET {base_url}/quote?symbol=...&apikey=...
    time_series:  GET {base_url}/time_series?symbol=...&interval=1day&outputsize=N&apikey=...

    A quote without close or previous_close is a failure, not a partial
    success. open/high/low fall back to the price; volume is optional.
    Rate limiting is NOT done here; callers go through the RateGovernor.
    """

    def __init__(
        self,
        api_key: str,
        registry: SymbolRegistry,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = 20.0,
        clock: Optional[Clock] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not api_key:
            raise RuntimeError("Missing TwelveData API key. Set TWELVEDATA_API_KEY in your .env.")
        self.api_key = api_key
        self.registry = registry
        self.base_url = base_url.rstrip("/")
        self._clock = clock or SystemClock()
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def close(self) -> None:
        await self._client.aclose()

    async def _get(self, symbol: str, path: str, params: dict) -> Any:
        params = {**params, "apikey": self.api_key}
        try:
            resp = await self._client.get(f"{self.base_url}/{path}", params=params)
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as e:
            raise FetchError(symbol, "timeout") from e
        except httpx.HTTPStatusError as e:
            raise FetchError(symbol, f"http {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise FetchError(symbol, f"network error: {e}") from e
        except ValueError as e:
            raise FetchError(symbol, "response is not JSON") from e

        # TwelveData reports errors (bad symbol, quota) with HTTP 200 + status=error
        if isinstance(data, dict) and data.get("status") == "error":
            raise FetchError(symbol, f"provider error {data.get('code')}: {data.get('message')}")
        return data

    # -------------------------
    # Quote
    # -------------------------
    async def fetch(self, symbol: str) -> Quote:
        symbol = symbol.strip().upper()
        tier = self.registry.tier_of(symbol)
        if tier is None:
            raise FetchError(symbol, "symbol not in any tier")

        data = await self._get(symbol, "quote", {"symbol": symbol})
        if not isinstance(data, dict):
            raise FetchError(symbol, f"unexpected payload type {type(data).__name__}")

        try:
            close = _num(data.get("close"))
            previous_close = _num(data.get("previous_close"))
            if close is None or previous_close is None:
                raise FetchError(symbol, "missing close/previous_close")

            open_ = _num(data.get("open"))
            high = _num(data.get("high"))
            low = _num(data.get("low"))
            volume_raw = data.get("volume")
            volume = int(float(volume_raw)) if volume_raw not in (None, "") else None
        except (TypeError, ValueError) as e:
            raise FetchError(symbol, f"malformed field: {e}") from e

        quote = Quote(
            symbol=symbol,
            price=close,
            open=open_ if open_ is not None else close,
            high=high if high is not None else close,
            low=low if low is not None else close,
            close=close,
            volume=volume,
            previous_close=previous_close,
            timestamp=self._clock.now(),
            tier=tier,
        )
        log.debug("Fetched quote symbol=%s price=%s", symbol, quote.price)
        return quote

    # -------------------------
    # Daily history
    # -------------------------
    async def fetch_history(self, symbol: str, days: int) -> List[Quote]:
        """
        Daily bars, oldest first. previous_close of each bar is the prior
        bar's close (the first bar uses its own open).
        """
        symbol = symbol.strip().upper()
        tier = self.registry.tier_of(symbol)
        if tier is None:
            raise FetchError(symbol, "symbol not in any tier")

        data = await self._get(
            symbol,
            "time_series",
            {"symbol": symbol, "interval": "1day", "outputsize": str(days)},
        )
        values = data.get("values") if isinstance(data, dict) else None
        if not isinstance(values, list):
            raise FetchError(symbol, "time_series payload has no values")

        rows: list[dict] = []
        for row in values:
            if not isinstance(row, dict):
                continue
            try:
                ts = self._parse_ts(row["datetime"])
                o = _num(row.get("open"))
                h = _num(row.get("high"))
                l = _num(row.get("low"))
                c = _num(row.get("close"))
                v = row.get("volume")
            except (KeyError, ValueError, TypeError):
                continue
            if o is None or h is None or l is None or c is None:
                continue
            rows.append(
                {
                    "ts": ts,
                    "open": o,
                    "high": h,
                    "low": l,
                    "close": c,
                    "volume": int(float(v)) if v not in (None, "") else None,
                }
            )

        rows.sort(key=lambda x: x["ts"])

        out: List[Quote] = []
        prev_close: Optional[float] = None
        for r in rows:
            out.append(
                Quote(
                    symbol=symbol,
                    price=r["close"],
                    open=r["open"],
                    high=r["high"],
                    low=r["low"],
                    close=r["close"],
                    volume=r["volume"],
                    previous_close=prev_close if prev_close is not None else r["open"],
                    timestamp=r["ts"],
                    tier=tier,
                )
            )
            prev_close = r["close"]
        return out

    def _parse_ts(self, ts_raw: Any) -> datetime:
        """
        Converts "YYYY-MM-DD" / "YYYY-MM-DD HH:MM:SS" / ISO strings to UTC.
        """
        s = str(ts_raw).strip().replace(" ", "T")
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
