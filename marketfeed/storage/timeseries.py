from __future__ import annotations

import json
import threading
from bisect import bisect_left, bisect_right
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol

import redis

from marketfeed.errors import CacheUnavailable
from marketfeed.models.market import Quote

RETENTION = timedelta(hours=24)


@dataclass(frozen=True)
class TimeSeriesPoint:
    symbol: str
    timestamp: datetime
    quote: Quote


class QuoteSeries(Protocol):
    """Rolling per-symbol quote history, in process or in Redis."""

    def append(self, symbol: str, quote: Quote) -> None: ...

    def range_query(self, symbol: str, start: datetime, end: datetime) -> List[TimeSeriesPoint]: ...

    def latest(self, symbol: str, n: int) -> List[TimeSeriesPoint]: ...

    def size(self, symbol: str) -> int: ...


@dataclass
class _Series:
    keys: List[datetime]
    points: List[TimeSeriesPoint]
    lock: threading.Lock


class TimeSeriesStore:
    """
    Rolling 24h intraday series per symbol.

    Each series is a pair of parallel lists sorted by timestamp, so lookups
    are a bisect instead of a scan. append() inserts and prunes under the
    symbol's lock; different symbols never contend.

    A point is dropped once it is more than 24h older than the newest point
    of its symbol.
    """

    def __init__(self, retention: timedelta = RETENTION) -> None:
        self.retention = retention
        self._series: Dict[str, _Series] = {}
        self._registry_lock = threading.Lock()

    def _get(self, symbol: str, create: bool = False) -> Optional[_Series]:
        symbol = symbol.upper()
        series = self._series.get(symbol)
        if series is None and create:
            with self._registry_lock:
                series = self._series.setdefault(
                    symbol, _Series(keys=[], points=[], lock=threading.Lock())
                )
        return series

    def append(self, symbol: str, quote: Quote) -> None:
        series = self._get(symbol, create=True)
        ts = quote.timestamp
        point = TimeSeriesPoint(symbol=symbol.upper(), timestamp=ts, quote=quote)

        with series.lock:
            i = bisect_left(series.keys, ts)
            if i < len(series.keys) and series.keys[i] == ts:
                # Same timestamp -> supersede, one point per instant.
                series.points[i] = point
            else:
                series.keys.insert(i, ts)
                series.points.insert(i, point)

            newest = series.keys[-1]
            cut = bisect_left(series.keys, newest - self.retention)
            if cut:
                del series.keys[:cut]
                del series.points[:cut]

    def range_query(self, symbol: str, start: datetime, end: datetime) -> List[TimeSeriesPoint]:
        """Points with start <= timestamp <= end, oldest first."""
        series = self._get(symbol)
        if series is None or end < start:
            return []
        with series.lock:
            lo = bisect_left(series.keys, start)
            hi = bisect_right(series.keys, end)
            return series.points[lo:hi]

    def latest(self, symbol: str, n: int) -> List[TimeSeriesPoint]:
        """The n most recent points, newest first."""
        series = self._get(symbol)
        if series is None or n <= 0:
            return []
        with series.lock:
            return list(reversed(series.points[-n:]))

    def size(self, symbol: str) -> int:
        series = self._get(symbol)
        if series is None:
            return 0
        with series.lock:
            return len(series.keys)


def _score(ts: datetime) -> float:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.timestamp() * 1000.0


class RedisTimeSeriesStore:
    """
    Redis sorted-set variant.

    Key:    {prefix}:{symbol}
    Score:  epoch millis of the quote timestamp
    Member: quote JSON

    Insert and prune run in one MULTI/EXEC; the key expires after the
    retention window as a backstop for symbols that stop updating.
    """

    def __init__(self, client: redis.Redis, retention: timedelta = RETENTION, prefix: str = "historical") -> None:
        self._redis = client
        self.retention = retention
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisTimeSeriesStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def _key(self, symbol: str) -> str:
        return f"{self.prefix}:{symbol.upper()}"

    def _newest_score(self, key: str) -> Optional[float]:
        top = self._redis.zrevrange(key, 0, 0, withscores=True)
        return float(top[0][1]) if top else None

    def append(self, symbol: str, quote: Quote) -> None:
        key = self._key(symbol)
        score = _score(quote.timestamp)
        try:
            newest = self._newest_score(key)
        except redis.RedisError as e:
            raise CacheUnavailable(f"series read failed for {symbol}: {e}") from e
        if newest is not None:
            newest = max(newest, score)
        else:
            newest = score
        cutoff = newest - self.retention.total_seconds() * 1000.0

        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.zremrangebyscore(key, score, score)
            pipe.zadd(key, {json.dumps(quote.to_dict()): score})
            pipe.zremrangebyscore(key, "-inf", f"({cutoff}")
            pipe.expire(key, int(self.retention.total_seconds()))
            pipe.execute()
        except redis.RedisError as e:
            raise CacheUnavailable(f"series append failed for {symbol}: {e}") from e

    def _decode(self, symbol: str, members: List[str]) -> List[TimeSeriesPoint]:
        out: List[TimeSeriesPoint] = []
        for raw in members:
            quote = Quote.from_dict(json.loads(raw))
            out.append(TimeSeriesPoint(symbol=symbol.upper(), timestamp=quote.timestamp, quote=quote))
        return out

    def range_query(self, symbol: str, start: datetime, end: datetime) -> List[TimeSeriesPoint]:
        if end < start:
            return []
        try:
            members = self._redis.zrangebyscore(self._key(symbol), _score(start), _score(end))
        except redis.RedisError as e:
            raise CacheUnavailable(f"series range failed for {symbol}: {e}") from e
        return self._decode(symbol, members)

    def latest(self, symbol: str, n: int) -> List[TimeSeriesPoint]:
        if n <= 0:
            return []
        try:
            members = self._redis.zrevrange(self._key(symbol), 0, n - 1)
        except redis.RedisError as e:
            raise CacheUnavailable(f"series read failed for {symbol}: {e}") from e
        return self._decode(symbol, members)

    def size(self, symbol: str) -> int:
        try:
            return int(self._redis.zcard(self._key(symbol)))
        except redis.RedisError as e:
            raise CacheUnavailable(f"series size failed for {symbol}: {e}") from e
