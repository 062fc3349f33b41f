from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from marketfeed.state import Services, get_services

router = APIRouter()


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


@router.get("/symbols")
def symbols(services: Services = Depends(get_services)):
    registry = services.registry
    return {
        "tiers": {
            tier.value: {
                "refresh_minutes": int(registry.refresh_interval(tier).total_seconds() // 60),
                "symbols": registry.symbols(tier),
            }
            for tier in services.orchestrators
        },
        "index_symbols": registry.index_symbols,
    }


@router.get("/quotes/{symbol}")
def quote(symbol: str, services: Services = Depends(get_services)):
    """
    Latest committed quote for one symbol (cache first, durable store on miss).
    """
    if not services.market_data.is_available(symbol):
        raise HTTPException(status_code=404, detail=f"unknown symbol {symbol.upper()}")
    q = services.market_data.get_current_quote(symbol)
    if q is None:
        raise HTTPException(status_code=404, detail=f"no data yet for {symbol.upper()}")
    return q.to_dict()


@router.get("/history/{symbol}")
def history(
    symbol: str,
    start: Optional[datetime] = Query(None, description="ISO timestamp, default now - 24h"),
    end: Optional[datetime] = Query(None, description="ISO timestamp, default now"),
    services: Services = Depends(get_services),
):
    """
    Points in [start, end]. Ranges inside the last 24h come from the intraday
    series, older ranges from the long-horizon history table.
    """
    if not services.market_data.is_available(symbol):
        raise HTTPException(status_code=404, detail=f"unknown symbol {symbol.upper()}")

    now = services.clock.now()
    end_ts = _aware(end) or now
    start_ts = _aware(start) or end_ts - timedelta(hours=24)
    if end_ts < start_ts:
        raise HTTPException(status_code=400, detail="end must not be before start")

    points = services.market_data.get_history(symbol, start_ts, end_ts)
    return {
        "symbol": symbol.upper(),
        "start": start_ts.isoformat(),
        "end": end_ts.isoformat(),
        "count": len(points),
        "points": [p.to_dict() for p in points],
    }


@router.get("/indices")
def indices(services: Services = Depends(get_services)):
    quotes = services.market_data.get_indices()
    missing = [s for s in services.registry.index_symbols if s not in quotes]
    return {
        "indices": {symbol: q.to_dict() for symbol, q in quotes.items()},
        "missing": missing,
    }
