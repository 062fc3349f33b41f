import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from marketfeed.errors import PersistenceError
from marketfeed.models.market import Tier
from marketfeed.storage.database import Database
from marketfeed.storage.snapshots import SnapshotStore

from fakes import make_quote, temp_database

T = datetime(2024, 1, 2, 15, 0, tzinfo=timezone.utc)


class TestSnapshotStore(unittest.TestCase):
    def setUp(self):
        self.store = SnapshotStore(temp_database())

    def test_latest_round_trip(self):
        q = make_quote("AAA", 101.25, ts=T, volume=None)
        self.store.replace_tier(Tier.PREMIUM, [q])

        got = self.store.latest("aaa")
        self.assertEqual(got, q)
        self.assertIsNone(got.volume)
        self.assertIsNone(self.store.latest("BBB"))

    def test_partial_write_keeps_other_rows(self):
        self.store.replace_tier(Tier.PREMIUM, [make_quote("AAA", 1.0), make_quote("BBB", 2.0)])
        self.store.replace_tier(Tier.PREMIUM, [make_quote("AAA", 3.0, ts=T + timedelta(minutes=20))])

        self.assertEqual(self.store.latest("AAA").price, 3.0)
        self.assertEqual(self.store.latest("BBB").price, 2.0)
        self.assertEqual([q.symbol for q in self.store.latest_for_tier(Tier.PREMIUM)], ["AAA", "BBB"])

    def test_quote_from_wrong_tier_is_rejected(self):
        with self.assertRaises(ValueError):
            self.store.replace_tier(Tier.STANDARD, [make_quote("AAA", 1.0, tier=Tier.PREMIUM)])

    def test_replace_tiers_writes_history_in_same_call(self):
        spy = make_quote("SPY", 470.0)
        fxi = make_quote("FXI", 24.0, tier=Tier.STANDARD)
        written = self.store.replace_tiers({Tier.PREMIUM: [spy], Tier.STANDARD: [fxi]}, history=[spy])

        self.assertEqual(written, 2)
        self.assertEqual(self.store.history("SPY", T, T), [spy])
        self.assertEqual(self.store.history("FXI", T, T), [])

    def test_history_range_and_replace(self):
        days = [make_quote("SPY", 400.0 + i, ts=T - timedelta(days=10 - i)) for i in range(10)]
        self.store.append_history(days)

        window = self.store.history("SPY", T - timedelta(days=5), T - timedelta(days=3))
        self.assertEqual([q.price for q in window], [405.0, 406.0, 407.0])

        self.store.replace_history("SPY", days[-2:])
        self.assertEqual(len(self.store.history("SPY", T - timedelta(days=30), T)), 2)

        self.assertEqual(self.store.reset_history(), 2)
        self.assertEqual(self.store.history("SPY", T - timedelta(days=30), T), [])

    def test_unusable_database_raises_persistence_error(self):
        store = SnapshotStore(Database(tempfile.mkdtemp()))
        with self.assertRaises(PersistenceError):
            store.latest("AAA")


if __name__ == "__main__":
    unittest.main()
