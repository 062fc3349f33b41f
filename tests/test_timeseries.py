import json
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

import redis

from marketfeed.errors import CacheUnavailable
from marketfeed.storage.timeseries import RedisTimeSeriesStore, TimeSeriesStore

from fakes import make_quote

T = datetime(2024, 1, 2, 15, 0, tzinfo=timezone.utc)


def at(minutes: float):
    return T + timedelta(minutes=minutes)


class TestTimeSeriesStore(unittest.TestCase):
    def setUp(self):
        self.store = TimeSeriesStore()

    def test_out_of_order_appends_read_back_sorted(self):
        for m in (20, 0, 40, 10):
            self.store.append("AAA", make_quote("AAA", 100 + m, ts=at(m)))

        points = self.store.range_query("AAA", at(0), at(40))
        self.assertEqual([p.timestamp for p in points], [at(0), at(10), at(20), at(40)])

    def test_range_bounds_are_inclusive(self):
        for m in (0, 10, 20, 30):
            self.store.append("AAA", make_quote("AAA", 1.0, ts=at(m)))
        points = self.store.range_query("AAA", at(10), at(20))
        self.assertEqual([p.timestamp for p in points], [at(10), at(20)])
        self.assertEqual(self.store.range_query("AAA", at(20), at(10)), [])

    def test_points_older_than_a_day_are_pruned(self):
        self.store.append("AAA", make_quote("AAA", 1.0, ts=at(0)))
        self.store.append("AAA", make_quote("AAA", 2.0, ts=at(60)))
        self.store.append("AAA", make_quote("AAA", 3.0, ts=at(60 * 25)))

        points = self.store.range_query("AAA", at(-60), at(60 * 30))
        self.assertEqual([p.quote.price for p in points], [2.0, 3.0])
        newest = points[-1].timestamp
        for p in points:
            self.assertGreaterEqual(p.timestamp, newest - timedelta(hours=24))

    def test_same_timestamp_replaces(self):
        self.store.append("AAA", make_quote("AAA", 1.0, ts=at(0)))
        self.store.append("AAA", make_quote("AAA", 2.0, ts=at(0)))
        self.assertEqual(self.store.size("AAA"), 1)
        self.assertEqual(self.store.latest("AAA", 1)[0].quote.price, 2.0)

    def test_latest_is_newest_first(self):
        for m in range(5):
            self.store.append("AAA", make_quote("AAA", float(m), ts=at(m)))
        self.assertEqual([p.quote.price for p in self.store.latest("AAA", 3)], [4.0, 3.0, 2.0])
        self.assertEqual(self.store.latest("AAA", 0), [])

    def test_unknown_symbol_is_empty(self):
        self.assertEqual(self.store.range_query("NOPE", at(0), at(10)), [])
        self.assertEqual(self.store.latest("NOPE", 5), [])
        self.assertEqual(self.store.size("NOPE"), 0)

    def test_symbols_are_independent(self):
        self.store.append("AAA", make_quote("AAA", 1.0, ts=at(0)))
        self.store.append("BBB", make_quote("BBB", 1.0, ts=at(60 * 30)))
        self.assertEqual(self.store.size("AAA"), 1)


class TestRedisTimeSeriesStore(unittest.TestCase):
    def setUp(self):
        self.client = mock.MagicMock()
        self.store = RedisTimeSeriesStore(self.client)

    def test_append_inserts_and_prunes_in_one_transaction(self):
        self.client.zrevrange.return_value = []
        pipe = self.client.pipeline.return_value

        self.store.append("aaa", make_quote("AAA", 1.0, ts=T))

        self.client.pipeline.assert_called_once_with(transaction=True)
        score = T.timestamp() * 1000.0
        pipe.zremrangebyscore.assert_any_call("historical:AAA", score, score)
        pipe.zremrangebyscore.assert_any_call("historical:AAA", "-inf", f"({score - 86400000.0}")
        self.assertEqual(pipe.zadd.call_args[0][0], "historical:AAA")
        pipe.expire.assert_called_once_with("historical:AAA", 86400)
        pipe.execute.assert_called_once()

    def test_range_query_decodes_members(self):
        q = make_quote("AAA", 5.0, ts=T)
        self.client.zrangebyscore.return_value = [json.dumps(q.to_dict())]
        points = self.store.range_query("AAA", at(-1), at(1))
        self.assertEqual(len(points), 1)
        self.assertEqual(points[0].quote.price, 5.0)
        self.assertEqual(points[0].timestamp, T)

    def test_redis_errors_become_cache_unavailable(self):
        self.client.zrevrange.side_effect = redis.ConnectionError("down")
        self.client.zrangebyscore.side_effect = redis.ConnectionError("down")
        self.client.zcard.side_effect = redis.ConnectionError("down")
        with self.assertRaises(CacheUnavailable):
            self.store.append("AAA", make_quote("AAA", 1.0))
        with self.assertRaises(CacheUnavailable):
            self.store.range_query("AAA", at(0), at(1))
        with self.assertRaises(CacheUnavailable):
            self.store.latest("AAA", 2)
        with self.assertRaises(CacheUnavailable):
            self.store.size("AAA")


if __name__ == "__main__":
    unittest.main()
