import json
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

import redis

from marketfeed.errors import CacheUnavailable
from marketfeed.market.clock import ManualClock
from marketfeed.market.symbols import SymbolRegistry
from marketfeed.models.market import Tier
from marketfeed.storage.cache import RedisTieredCache, TieredCache

from fakes import make_quote, small_registry


class TestTieredCache(unittest.TestCase):
    def setUp(self):
        self.clock = ManualClock(datetime(2024, 1, 2, 15, 30, tzinfo=timezone.utc))
        self.registry = small_registry()
        self.cache = TieredCache(self.registry, clock=self.clock)

    def test_ttl_is_the_refresh_interval(self):
        for tier in Tier:
            self.assertEqual(self.cache.ttl(tier), self.registry.refresh_interval(tier))

        reg = SymbolRegistry(refresh_minutes={Tier.PREMIUM: 5})
        self.assertEqual(TieredCache(reg).ttl(Tier.PREMIUM), timedelta(minutes=5))

    def test_premium_entry_expires_after_twenty_minutes(self):
        q = make_quote("AAA", 101.0)
        self.cache.put(Tier.PREMIUM, "AAA", q)

        self.clock.set(datetime(2024, 1, 2, 15, 49, tzinfo=timezone.utc))
        self.assertEqual(self.cache.get(Tier.PREMIUM, "AAA"), q)

        self.clock.set(datetime(2024, 1, 2, 15, 51, tzinfo=timezone.utc))
        self.assertIsNone(self.cache.get(Tier.PREMIUM, "AAA"))

    def test_entry_is_stale_exactly_at_expiry(self):
        self.cache.put(Tier.PREMIUM, "AAA", make_quote("AAA", 1.0))
        self.clock.advance(timedelta(minutes=20))
        self.assertIsNone(self.cache.get(Tier.PREMIUM, "AAA"))

    def test_invalidate_only_touches_one_tier(self):
        self.cache.put(Tier.PREMIUM, "AAA", make_quote("AAA", 1.0))
        self.cache.put(Tier.STANDARD, "CCC", make_quote("CCC", 2.0, tier=Tier.STANDARD))

        self.cache.invalidate_tier(Tier.PREMIUM)

        self.assertIsNone(self.cache.get(Tier.PREMIUM, "AAA"))
        self.assertEqual(self.cache.size(Tier.PREMIUM), 0)
        self.assertIsNotNone(self.cache.get(Tier.STANDARD, "CCC"))

    def test_keys_are_case_insensitive(self):
        self.cache.put(Tier.PREMIUM, "aaa", make_quote("AAA", 1.0))
        self.assertIsNotNone(self.cache.get(Tier.PREMIUM, "AAA"))


class TestRedisTieredCache(unittest.TestCase):
    def setUp(self):
        self.clock = ManualClock(datetime(2024, 1, 2, 15, 30, tzinfo=timezone.utc))
        self.client = mock.MagicMock()
        self.cache = RedisTieredCache(small_registry(), self.client, clock=self.clock)

    def test_put_writes_hash_and_expiry(self):
        pipe = self.client.pipeline.return_value
        self.cache.put(Tier.PREMIUM, "AAA", make_quote("AAA", 101.0))

        key, field, payload = pipe.hset.call_args[0]
        self.assertEqual((key, field), ("quotes:premium", "AAA"))
        self.assertEqual(json.loads(payload)["quote"]["price"], 101.0)
        pipe.pexpire.assert_called_once_with("quotes:premium", 20 * 60 * 1000)
        pipe.execute.assert_called_once()

    def test_get_honours_stored_expiry(self):
        pipe = self.client.pipeline.return_value
        self.cache.put(Tier.PREMIUM, "AAA", make_quote("AAA", 101.0))
        self.client.hget.return_value = pipe.hset.call_args[0][2]

        self.clock.set(datetime(2024, 1, 2, 15, 49, tzinfo=timezone.utc))
        self.assertEqual(self.cache.get(Tier.PREMIUM, "AAA").price, 101.0)

        self.clock.set(datetime(2024, 1, 2, 15, 51, tzinfo=timezone.utc))
        self.assertIsNone(self.cache.get(Tier.PREMIUM, "AAA"))

    def test_miss(self):
        self.client.hget.return_value = None
        self.assertIsNone(self.cache.get(Tier.PREMIUM, "AAA"))

    def test_unreadable_entry_is_a_miss(self):
        self.client.hget.return_value = "not json"
        self.assertIsNone(self.cache.get(Tier.PREMIUM, "AAA"))

    def test_invalidate_is_single_delete(self):
        self.cache.invalidate_tier(Tier.STANDARD)
        self.client.delete.assert_called_once_with("quotes:standard")

    def test_redis_errors_become_cache_unavailable(self):
        self.client.hget.side_effect = redis.ConnectionError("down")
        self.client.delete.side_effect = redis.ConnectionError("down")
        self.client.pipeline.return_value.execute.side_effect = redis.ConnectionError("down")

        with self.assertRaises(CacheUnavailable):
            self.cache.get(Tier.PREMIUM, "AAA")
        with self.assertRaises(CacheUnavailable):
            self.cache.invalidate_tier(Tier.PREMIUM)
        with self.assertRaises(CacheUnavailable):
            self.cache.put(Tier.PREMIUM, "AAA", make_quote("AAA", 1.0))


if __name__ == "__main__":
    unittest.main()
