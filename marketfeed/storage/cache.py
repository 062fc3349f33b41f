from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol

import redis

from marketfeed.errors import CacheUnavailable
from marketfeed.market.clock import Clock, SystemClock
from marketfeed.market.symbols import SymbolRegistry
from marketfeed.models.market import Quote, Tier

log = logging.getLogger("quote_cache")


class QuoteCache(Protocol):
    """What the refresh pipeline and the read side need from a cache backend."""

    def get(self, tier: Tier, symbol: str) -> Optional[Quote]: ...

    def put(self, tier: Tier, symbol: str, quote: Quote) -> None: ...

    def invalidate_tier(self, tier: Tier) -> None: ...


@dataclass(frozen=True)
class CacheEntry:
    quote: Quote
    created_at: datetime
    expires_at: datetime

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at


class TieredCache:
    """
    In-process cache-aside store keyed by (tier, symbol).

    entries[tier] -> {symbol: CacheEntry}

    - TTL of a tier is the registry's refresh interval for that tier
    - invalidate_tier() swaps the whole per-tier map under the lock, so a
      reader sees either the old map or the empty one
    - a miss (absent or expired) returns None; reloading is the caller's job
    """

    def __init__(self, registry: SymbolRegistry, clock: Optional[Clock] = None) -> None:
        self.registry = registry
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._entries: Dict[Tier, Dict[str, CacheEntry]] = {tier: {} for tier in Tier}

    def ttl(self, tier: Tier) -> timedelta:
        return self.registry.refresh_interval(tier)

    def get(self, tier: Tier, symbol: str) -> Optional[Quote]:
        now = self._clock.now()
        with self._lock:
            entry = self._entries[tier].get(symbol.upper())
        if entry is None or not entry.is_fresh(now):
            return None
        return entry.quote

    def put(self, tier: Tier, symbol: str, quote: Quote) -> None:
        now = self._clock.now()
        entry = CacheEntry(quote=quote, created_at=now, expires_at=now + self.ttl(tier))
        with self._lock:
            self._entries[tier][symbol.upper()] = entry

    def invalidate_tier(self, tier: Tier) -> None:
        with self._lock:
            self._entries[tier] = {}

    def size(self, tier: Tier) -> int:
        with self._lock:
            return len(self._entries[tier])


class RedisTieredCache:
    """
    Redis-backed variant of TieredCache.

    One hash per tier:  {prefix}:{tier} -> {symbol: json(entry)}
    - each entry carries its own expires_at (checked on read)
    - the hash key itself expires after the tier TTL
    - invalidate_tier() is a single DEL, atomic for readers
    Every redis error surfaces as CacheUnavailable.
    """

    def __init__(
        self,
        registry: SymbolRegistry,
        client: redis.Redis,
        clock: Optional[Clock] = None,
        prefix: str = "quotes",
    ) -> None:
        self.registry = registry
        self._redis = client
        self._clock = clock or SystemClock()
        self.prefix = prefix

    @classmethod
    def from_url(cls, registry: SymbolRegistry, url: str, clock: Optional[Clock] = None) -> "RedisTieredCache":
        return cls(registry, redis.Redis.from_url(url, decode_responses=True), clock=clock)

    def _key(self, tier: Tier) -> str:
        return f"{self.prefix}:{tier.value}"

    def ttl(self, tier: Tier) -> timedelta:
        return self.registry.refresh_interval(tier)

    def get(self, tier: Tier, symbol: str) -> Optional[Quote]:
        try:
            raw = self._redis.hget(self._key(tier), symbol.upper())
        except redis.RedisError as e:
            raise CacheUnavailable(f"redis get failed: {e}") from e
        if raw is None:
            return None

        try:
            payload = json.loads(raw)
            expires_at = datetime.fromisoformat(payload["expires_at"])
            quote = Quote.from_dict(payload["quote"])
        except (ValueError, KeyError, TypeError):
            log.warning("Dropping unreadable cache entry tier=%s symbol=%s", tier.value, symbol)
            return None

        if self._clock.now() >= expires_at:
            return None
        return quote

    def put(self, tier: Tier, symbol: str, quote: Quote) -> None:
        now = self._clock.now()
        ttl = self.ttl(tier)
        payload = json.dumps({"expires_at": (now + ttl).isoformat(), "quote": quote.to_dict()})
        key = self._key(tier)
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.hset(key, symbol.upper(), payload)
            pipe.pexpire(key, int(ttl.total_seconds() * 1000))
            pipe.execute()
        except redis.RedisError as e:
            raise CacheUnavailable(f"redis put failed: {e}") from e

    def invalidate_tier(self, tier: Tier) -> None:
        try:
            self._redis.delete(self._key(tier))
        except redis.RedisError as e:
            raise CacheUnavailable(f"redis invalidate failed: {e}") from e

    def size(self, tier: Tier) -> int:
        try:
            return int(self._redis.hlen(self._key(tier)))
        except redis.RedisError as e:
            raise CacheUnavailable(f"redis size failed: {e}") from e
