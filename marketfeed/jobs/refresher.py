from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from marketfeed.alerts.dispatch import AlertDispatcher
from marketfeed.alerts.engine import AlertEngine
from marketfeed.errors import (
    AlertDispatchError,
    CacheUnavailable,
    FetchError,
    PersistenceError,
    RateLimitCancelled,
)
from marketfeed.market.clock import Clock, SystemClock
from marketfeed.market.hours import MarketClock
from marketfeed.market.rate_governor import RateGovernor
from marketfeed.market.symbols import SymbolRegistry
from marketfeed.models.alert import AlertRule
from marketfeed.models.market import Quote, Tier
from marketfeed.models.report import CycleReport
from marketfeed.providers.base import QuoteProvider
from marketfeed.storage.cache import QuoteCache
from marketfeed.storage.snapshots import SnapshotStore
from marketfeed.storage.timeseries import QuoteSeries

log = logging.getLogger("refresher")

PROGRESS_EVERY = 10

PriceListener = Callable[[Dict[str, float]], None]


class CycleState(str, Enum):
    IDLE = "idle"
    GATING = "gating"
    FETCHING = "fetching"
    COMMITTING = "committing"


class RefreshOrchestrator:
    """
    Runs refresh cycles for one symbol group (normally one tier).

    Cycle: IDLE -> GATING -> FETCHING -> COMMITTING -> IDLE

    GATING:     market closed -> log and skip, no side effects
    FETCHING:   evict the tier cache, then per symbol (stable order):
                governor slot -> provider fetch with timeout.
                A failed symbol is recorded, the loop moves on.
    COMMITTING: only if >= 1 symbol succeeded, in this order:
                1. durable upsert of the succeeded symbols (one transaction);
                   on PersistenceError the rest of the commit is skipped
                2. invalidate tier cache, then warm it with the new quotes
                3. append each quote to the intraday series
                4. evaluate alerts with the cycle's price map, dispatch fires
                5. hand the price map to listeners (e.g. portfolio revaluation)
    """

    def __init__(
        self,
        registry: SymbolRegistry,
        provider: QuoteProvider,
        governor: RateGovernor,
        market_clock: MarketClock,
        snapshots: SnapshotStore,
        cache: Optional[QuoteCache],
        series: QuoteSeries,
        alerts: AlertEngine,
        dispatcher: AlertDispatcher,
        tier: Optional[Tier] = None,
        symbols: Optional[Sequence[str]] = None,
        label: Optional[str] = None,
        gated: bool = True,
        fetch_timeout: float = 20.0,
        clock: Optional[Clock] = None,
        listeners: Iterable[PriceListener] = (),
        cancel: Optional[asyncio.Event] = None,
    ) -> None:
        if tier is None and symbols is None:
            raise ValueError("need a tier or an explicit symbol list")
        self.registry = registry
        self.provider = provider
        self.governor = governor
        self.market_clock = market_clock
        self.snapshots = snapshots
        self.cache = cache
        self.series = series
        self.alerts = alerts
        self.dispatcher = dispatcher
        self.tier = tier
        self._symbols = [s.upper() for s in symbols] if symbols is not None else None
        self.label = label or (tier.value.upper() if tier else "CUSTOM")
        self.gated = gated
        self.fetch_timeout = fetch_timeout
        self._clock = clock or SystemClock()
        self.listeners: List[PriceListener] = list(listeners)
        self.cancel = cancel
        self.state = CycleState.IDLE
        self.last_report: Optional[CycleReport] = None

    @property
    def symbols(self) -> List[str]:
        if self._symbols is not None:
            return list(self._symbols)
        return self.registry.symbols(self.tier)

    def _tiers_of(self, symbols: Iterable[str]) -> List[Tier]:
        tiers = {self.registry.tier_of(s) for s in symbols}
        return [t for t in Tier if t in tiers]

    # ── cache helpers (best effort) ───────────────────────────

    def _evict(self, tier: Tier) -> None:
        if self.cache is None:
            return
        try:
            self.cache.invalidate_tier(tier)
        except CacheUnavailable as e:
            log.warning("Cache invalidate failed tier=%s error=%s", tier.value, e)

    def _warm(self, quote: Quote) -> None:
        if self.cache is None:
            return
        try:
            self.cache.put(quote.tier, quote.symbol, quote)
        except CacheUnavailable as e:
            log.warning("Cache put failed symbol=%s error=%s", quote.symbol, e)

    # ── cycle ─────────────────────────────────────────────────

    async def run_cycle(self) -> CycleReport:
        report = CycleReport(
            label=self.label,
            tier=self.tier.value if self.tier else None,
            started_at=self._clock.now(),
        )
        try:
            # A cancel request left over from an earlier cycle does not carry into this one.
            if self.cancel is not None:
                self.cancel.clear()

            self.state = CycleState.GATING
            if self.gated and not self.market_clock.is_open():
                report.skipped = True
                log.info("%s skipped: %s", self.label, self.market_clock.status_line())
                return report

            symbols = self.symbols
            log.info(
                "Starting %s update symbols=%d governor_load=%d",
                self.label,
                len(symbols),
                self.governor.current_load(),
            )

            # Evict before any fetch so no reader gets a value older than this cycle.
            for tier in self._tiers_of(symbols):
                self._evict(tier)

            self.state = CycleState.FETCHING
            quotes = await self._fetch_all(symbols, report)

            if not quotes:
                log.error(
                    "%s cycle failed: 0/%d symbols fetched failed=%s",
                    self.label,
                    len(symbols),
                    ", ".join(f"{s} ({r})" for s, r in report.failed.items()),
                )
                return report

            self.state = CycleState.COMMITTING
            self._commit(quotes, report)
            return report
        finally:
            report.finished_at = self._clock.now()
            self.state = CycleState.IDLE
            self.last_report = report
            if not report.skipped and report.succeeded:
                log.info(report.summary())

    async def _fetch_all(self, symbols: Sequence[str], report: CycleReport) -> Dict[str, Quote]:
        quotes: Dict[str, Quote] = {}

        for symbol in symbols:
            try:
                await self.governor.acquire(cancel=self.cancel)
                quote = await asyncio.wait_for(self.provider.fetch(symbol), timeout=self.fetch_timeout)
            except RateLimitCancelled:
                # One request cancels one wait; the next symbol queues normally.
                self.cancel.clear()
                report.failed[symbol] = "rate limit wait cancelled"
                log.warning("%s rate limit wait cancelled symbol=%s", self.label, symbol)
                continue
            except asyncio.TimeoutError:
                report.failed[symbol] = "timeout"
                log.warning("%s fetch timed out symbol=%s timeout=%ss", self.label, symbol, self.fetch_timeout)
                continue
            except FetchError as e:
                report.failed[symbol] = e.reason
                log.warning("%s fetch failed symbol=%s reason=%s", self.label, symbol, e.reason)
                continue
            except Exception as e:
                # Provider bug or unexpected payload: record it and keep the cycle going.
                report.failed[symbol] = repr(e)
                log.exception("%s unexpected fetch error symbol=%s", self.label, symbol)
                continue

            quotes[symbol] = quote
            report.succeeded.append(symbol)
            if len(quotes) % PROGRESS_EVERY == 0:
                log.info("%s progress %d/%d", self.label, len(quotes), len(symbols))

        return quotes

    def _commit(self, quotes: Mapping[str, Quote], report: CycleReport) -> None:
        groups: Dict[Tier, List[Quote]] = {}
        for quote in quotes.values():
            groups.setdefault(quote.tier, []).append(quote)
        history = [q for q in quotes.values() if self.registry.is_index(q.symbol)]

        # 1. durable write: all-or-nothing for the cycle
        try:
            self.snapshots.replace_tiers(groups, history=history)
        except PersistenceError as e:
            log.error(
                "%s commit aborted, durable write failed: %s (previous data stays authoritative)",
                self.label,
                e,
            )
            return
        report.committed = True

        # 2. cache: evict the tier again, then install this cycle's values
        for tier in groups:
            self._evict(tier)
        for quote in quotes.values():
            self._warm(quote)

        # 3. intraday series
        for symbol, quote in quotes.items():
            try:
                self.series.append(symbol, quote)
            except CacheUnavailable as e:
                log.warning("Series append failed symbol=%s error=%s", symbol, e)

        # 4. alerts (after the durable write, so a fired alert never reflects an unpersisted quote)
        price_map = {symbol: quote.price for symbol, quote in quotes.items()}
        fired = self._evaluate_alerts(price_map)
        report.triggered = [rule.id for rule in fired]

        # 5. downstream consumers of the price map
        for listener in self.listeners:
            try:
                listener(dict(price_map))
            except Exception:
                log.exception("%s price listener failed listener=%r", self.label, listener)

    def _evaluate_alerts(self, price_map: Dict[str, float]) -> List[AlertRule]:
        try:
            fired = self.alerts.evaluate(price_map)
        except PersistenceError as e:
            log.error("%s alert evaluation failed: %s", self.label, e)
            return []

        for rule in fired:
            price = price_map[rule.symbol]
            try:
                self.dispatcher.dispatch(rule, price)
            except Exception as e:
                err = AlertDispatchError(f"alert {rule.id}: {e}")
                # The rule stays TRIGGERED; redelivery belongs to the notification side.
                log.error("%s alert dispatch failed: %s", self.label, err)
        if fired:
            log.info("%s alerts fired=%d ids=%s", self.label, len(fired), [r.id for r in fired])
        return fired
