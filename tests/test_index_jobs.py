import asyncio
import unittest
from datetime import timedelta

from marketfeed.jobs.index_jobs import HistoryReloader
from marketfeed.market.clock import ManualClock
from marketfeed.market.rate_governor import RateGovernor
from marketfeed.models.market import Tier
from marketfeed.storage.snapshots import SnapshotStore

from fakes import CancellingClock, FakeProvider, make_quote, small_registry, temp_database


class TestHistoryReloader(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = ManualClock()
        self.registry = small_registry()
        self.snapshots = SnapshotStore(temp_database())
        self.provider = FakeProvider(self.registry, clock=self.clock)
        self.governor = RateGovernor(clock=self.clock)
        self.now = self.clock.now()

    def bars(self, symbol, tier, n):
        return [
            make_quote(symbol, 100.0 + i, tier=tier, ts=self.now - timedelta(days=n - i))
            for i in range(n)
        ]

    async def test_reload_replaces_history(self):
        stale = make_quote("AAA", 1.0, ts=self.now - timedelta(days=1))
        self.snapshots.append_history([stale])
        self.provider.history = {
            "SPY": self.bars("SPY", Tier.PREMIUM, 5),
            "FXI": self.bars("FXI", Tier.STANDARD, 3),
        }

        reloader = HistoryReloader(["SPY", "FXI"], self.provider, self.governor, self.snapshots, lookback_days=730)
        stored = await reloader.reload()

        self.assertEqual(stored, {"SPY": 5, "FXI": 3})
        self.assertEqual(self.provider.calls, ["history:SPY", "history:FXI"])
        self.assertEqual(self.governor.current_load(), 2)
        self.assertEqual(self.snapshots.history("AAA", self.now - timedelta(days=2), self.now), [])
        self.assertEqual(len(self.snapshots.history("SPY", self.now - timedelta(days=10), self.now)), 5)

    async def test_failed_symbol_does_not_stop_the_reload(self):
        self.provider.failures = {"SPY": "http 503"}
        self.provider.history = {"FXI": self.bars("FXI", Tier.STANDARD, 2)}

        stored = await HistoryReloader(["SPY", "FXI"], self.provider, self.governor, self.snapshots).reload()

        self.assertEqual(stored, {"FXI": 2})

    async def test_cancelled_wait_skips_one_symbol_only(self):
        cancel = asyncio.Event()
        clock = CancellingClock(cancel)
        governor = RateGovernor(max_calls=1, clock=clock)
        self.provider.history = {
            "SPY": self.bars("SPY", Tier.PREMIUM, 2),
            "FXI": self.bars("FXI", Tier.STANDARD, 2),
            "AAA": self.bars("AAA", Tier.PREMIUM, 2),
        }
        reloader = HistoryReloader(["SPY", "FXI", "AAA"], self.provider, governor, self.snapshots, cancel=cancel)

        # FXI is the first symbol that has to wait for a slot
        first = await reloader.reload()
        self.assertEqual(first, {"SPY": 2, "AAA": 2})
        self.assertFalse(cancel.is_set())

        second = await reloader.reload()
        self.assertEqual(second, {"SPY": 2, "FXI": 2, "AAA": 2})

    def test_lookback_must_be_positive(self):
        with self.assertRaises(ValueError):
            HistoryReloader(["SPY"], self.provider, self.governor, self.snapshots, lookback_days=0)


if __name__ == "__main__":
    unittest.main()
