from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import time, timedelta
from typing import Dict, Optional
from zoneinfo import ZoneInfo

from marketfeed.alerts.dispatch import AlertDispatcher, LoggingDispatcher
from marketfeed.alerts.engine import AlertEngine
from marketfeed.alerts.repository import AlertRepository
from marketfeed.config import Settings
from marketfeed.jobs.index_jobs import HistoryReloader
from marketfeed.jobs.refresher import RefreshOrchestrator
from marketfeed.jobs.scheduler import Scheduler
from marketfeed.market.clock import Clock, SystemClock
from marketfeed.market.hours import MarketClock
from marketfeed.market.rate_governor import RateGovernor
from marketfeed.market.symbols import SymbolRegistry
from marketfeed.models.market import Tier
from marketfeed.providers.base import QuoteProvider
from marketfeed.providers.loader import get_provider
from marketfeed.services.market_data import MarketDataService
from marketfeed.storage.cache import QuoteCache, RedisTieredCache, TieredCache
from marketfeed.storage.database import Database
from marketfeed.storage.snapshots import SnapshotStore
from marketfeed.storage.timeseries import QuoteSeries, RedisTimeSeriesStore, TimeSeriesStore

log = logging.getLogger("state")

ALERT_PURGE_AT = time(3, 0)


@dataclass
class Services:
    """Everything the running process shares: one governor, one store, one scheduler."""

    settings: Settings
    clock: Clock
    registry: SymbolRegistry
    governor: RateGovernor
    market_clock: MarketClock
    db: Database
    snapshots: SnapshotStore
    cache: Optional[QuoteCache]
    series: QuoteSeries
    alerts: AlertEngine
    dispatcher: AlertDispatcher
    provider: QuoteProvider
    market_data: MarketDataService
    orchestrators: Dict[Tier, RefreshOrchestrator] = field(default_factory=dict)
    eod_snapshot: Optional[RefreshOrchestrator] = None
    history: Optional[HistoryReloader] = None
    scheduler: Optional[Scheduler] = None

    async def purge_alerts(self) -> int:
        return self.alerts.purge_triggered(self.settings.alert_purge_days)

    def start(self) -> None:
        if self.scheduler is not None:
            self.scheduler.start()

    async def stop(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        await self.provider.close()


def build_services(
    settings: Settings,
    clock: Optional[Clock] = None,
    provider: Optional[QuoteProvider] = None,
    dispatcher: Optional[AlertDispatcher] = None,
) -> Services:
    """
    Wires the components from settings.

    REDIS_URL set   -> Redis cache and Redis intraday series
    REDIS_URL empty -> in-process cache and series
    """
    clock = clock or SystemClock()
    tz = ZoneInfo(settings.market_timezone)

    registry = SymbolRegistry(
        symbols=settings.tier_symbols,
        refresh_minutes=settings.refresh_minutes,
        index_symbols=settings.index_symbols,
    )
    governor = RateGovernor(max_calls=settings.rate_limit_per_minute, clock=clock)
    market_clock = MarketClock(
        clock=clock,
        tz=tz,
        open_time=settings.market_open,
        close_time=settings.market_close,
        grace_minutes=settings.market_grace_minutes,
    )

    db = Database(settings.db_path)
    db.init_db()
    snapshots = SnapshotStore(db)

    if settings.redis_url:
        cache = RedisTieredCache.from_url(registry, settings.redis_url, clock=clock)
        series = RedisTimeSeriesStore.from_url(settings.redis_url)
        log.info("Using Redis cache and series url=%s", settings.redis_url)
    else:
        cache = TieredCache(registry, clock=clock)
        series = TimeSeriesStore()
        log.info("Using in-process cache and series")

    alerts = AlertEngine(AlertRepository(db), clock=clock)
    dispatcher = dispatcher or LoggingDispatcher()
    provider = provider or get_provider(settings, registry, clock=clock)

    services = Services(
        settings=settings,
        clock=clock,
        registry=registry,
        governor=governor,
        market_clock=market_clock,
        db=db,
        snapshots=snapshots,
        cache=cache,
        series=series,
        alerts=alerts,
        dispatcher=dispatcher,
        provider=provider,
        market_data=MarketDataService(registry, snapshots, cache, series, clock=clock),
    )

    def orchestrator(**kwargs) -> RefreshOrchestrator:
        return RefreshOrchestrator(
            registry=registry,
            provider=provider,
            governor=governor,
            market_clock=market_clock,
            snapshots=snapshots,
            cache=cache,
            series=series,
            alerts=alerts,
            dispatcher=dispatcher,
            fetch_timeout=settings.fetch_timeout_seconds,
            clock=clock,
            **kwargs,
        )

    services.orchestrators = {tier: orchestrator(tier=tier) for tier in Tier}
    services.eod_snapshot = orchestrator(
        symbols=registry.index_symbols, label="EOD_INDICES", gated=False
    )
    services.history = HistoryReloader(
        symbols=registry.index_symbols,
        provider=provider,
        governor=governor,
        snapshots=snapshots,
        lookback_days=settings.history_lookback_days,
    )
    services.scheduler = schedule_jobs(services, tz)

    log.info(registry.describe())
    return services


def schedule_jobs(services: Services, tz: ZoneInfo) -> Scheduler:
    settings = services.settings
    scheduler = Scheduler(services.clock)

    for tier, orch in services.orchestrators.items():
        scheduler.every(services.registry.refresh_interval(tier), orch.run_cycle, name=f"refresh:{tier.value}")

    scheduler.daily_at(settings.eod_snapshot_time, services.eod_snapshot.run_cycle, name="eod_snapshot", tz=tz)
    scheduler.every(
        timedelta(days=settings.history_reload_days),
        services.history.reload,
        name="history_reload",
    )
    scheduler.daily_at(
        ALERT_PURGE_AT,
        services.purge_alerts,
        name="alert_purge",
        tz=tz,
        weekdays=range(0, 7),
    )
    return scheduler


# Process-wide container, set by the app on startup
_services: Optional[Services] = None


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services


def get_services() -> Services:
    if _services is None:
        raise RuntimeError("services not initialised; the app has not started")
    return _services
