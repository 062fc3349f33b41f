from __future__ import annotations

import argparse
import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone

from marketfeed.alerts.dispatch import LoggingDispatcher
from marketfeed.alerts.engine import AlertEngine
from marketfeed.alerts.repository import AlertRepository
from marketfeed.jobs.refresher import RefreshOrchestrator
from marketfeed.logging_setup import configure_logging
from marketfeed.market.clock import ManualClock
from marketfeed.market.hours import MarketClock
from marketfeed.market.rate_governor import RateGovernor
from marketfeed.market.symbols import SymbolRegistry
from marketfeed.models.alert import ConditionKind
from marketfeed.models.market import Tier
from marketfeed.providers.simulated import SimulatedProvider
from marketfeed.storage.cache import TieredCache
from marketfeed.storage.database import Database
from marketfeed.storage.snapshots import SnapshotStore
from marketfeed.storage.timeseries import TimeSeriesStore


async def run(tier: Tier, cycles: int, fail: list[str], seed: int) -> None:
    """
    Runs `cycles` refresh cycles for one tier against the simulated provider.

    - time is a ManualClock starting Tuesday 2024-01-02 10:00 ET, so the
      governor's 60s waits finish instantly
    - one alert per symbol is armed at +0.3% of the start price
    - each cycle's summary line is printed; logs show governor waits
    """
    clock = ManualClock(datetime(2024, 1, 2, 15, 0, tzinfo=timezone.utc))
    registry = SymbolRegistry()
    provider = SimulatedProvider(registry, clock=clock, seed=seed, failing=fail)

    db = Database(os.path.join(tempfile.mkdtemp(prefix="marketfeed-sim-"), "sim.db"))
    db.init_db()
    alerts = AlertEngine(AlertRepository(db), clock=clock)
    for symbol in registry.symbols(tier):
        alerts.create_rule("sim", symbol, ConditionKind.GREATER_OR_EQUAL, 100.3, "simulated breakout")

    orch = RefreshOrchestrator(
        registry=registry,
        provider=provider,
        governor=RateGovernor(clock=clock),
        market_clock=MarketClock(clock=clock),
        snapshots=SnapshotStore(db),
        cache=TieredCache(registry, clock=clock),
        series=TimeSeriesStore(),
        alerts=alerts,
        dispatcher=LoggingDispatcher(),
        tier=tier,
        clock=clock,
    )

    print(f"Simulating {cycles} {tier.value} cycles over {len(orch.symbols)} symbols...\n")
    for i in range(cycles):
        report = await orch.run_cycle()
        took = (report.finished_at - report.started_at).total_seconds()
        print(f"[cycle {i + 1}] {report.summary()} fired={report.triggered} sim_seconds={took:.0f}")
        clock.advance(registry.refresh_interval(tier) - timedelta(seconds=took))

    stats = alerts.stats("sim")
    print(f"\nDone. alerts total={stats.total} active={stats.active} triggered={stats.triggered}")


if __name__ == "__main__":
    p = argparse.ArgumentParser(description="Offline refresh cycle simulation")
    p.add_argument("--tier", choices=[t.value for t in Tier], default=Tier.PREMIUM.value)
    p.add_argument("--cycles", type=int, default=3)
    p.add_argument("--fail", nargs="*", default=[], help="symbols that always fail")
    p.add_argument("--seed", type=int, default=7)
    p.add_argument("--log-level", default="WARNING")
    args = p.parse_args()

    configure_logging(args.log_level)
    asyncio.run(run(Tier(args.tier), args.cycles, args.fail, args.seed))
