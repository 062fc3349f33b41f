import unittest
from datetime import datetime, timezone

import httpx

from marketfeed.errors import FetchError
from marketfeed.market.clock import ManualClock
from marketfeed.models.market import Tier
from marketfeed.providers.twelvedata import TwelveDataProvider

from fakes import small_registry

QUOTE_OK = {
    "symbol": "AAA",
    "open": "99.5",
    "high": "102",
    "low": "99",
    "close": "101.25",
    "volume": "123456",
    "previous_close": "100",
}


class TestTwelveDataProvider(unittest.IsolatedAsyncioTestCase):
    def make(self, handler) -> TwelveDataProvider:
        self.requests = []

        def record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(record))
        return TwelveDataProvider(
            api_key="k",
            registry=small_registry(),
            base_url="https://td.test/",
            clock=ManualClock(),
            client=client,
        )

    async def test_quote(self):
        provider = self.make(lambda r: httpx.Response(200, json=QUOTE_OK))
        q = await provider.fetch("aaa")
        await provider.close()

        self.assertEqual(q.symbol, "AAA")
        self.assertEqual(q.price, 101.25)
        self.assertEqual((q.open, q.high, q.low), (99.5, 102.0, 99.0))
        self.assertEqual(q.volume, 123456)
        self.assertEqual(q.tier, Tier.PREMIUM)
        self.assertEqual(q.change_percent, 1.25)
        self.assertEqual(q.timestamp, ManualClock().now())

        req = self.requests[0]
        self.assertEqual(req.url.path, "/quote")
        self.assertEqual(req.url.params["symbol"], "AAA")
        self.assertEqual(req.url.params["apikey"], "k")

    async def test_optional_fields_default_to_price(self):
        payload = {"close": "10", "previous_close": "8"}
        provider = self.make(lambda r: httpx.Response(200, json=payload))
        q = await provider.fetch("AAA")
        self.assertEqual((q.open, q.high, q.low), (10.0, 10.0, 10.0))
        self.assertIsNone(q.volume)

    async def test_missing_previous_close_fails(self):
        payload = {"close": "10"}
        provider = self.make(lambda r: httpx.Response(200, json=payload))
        with self.assertRaises(FetchError) as ctx:
            await provider.fetch("AAA")
        self.assertEqual(ctx.exception.symbol, "AAA")

    async def test_provider_error_payload(self):
        payload = {"status": "error", "code": 429, "message": "limit"}
        provider = self.make(lambda r: httpx.Response(200, json=payload))
        with self.assertRaises(FetchError) as ctx:
            await provider.fetch("AAA")
        self.assertIn("429", ctx.exception.reason)

    async def test_http_error(self):
        provider = self.make(lambda r: httpx.Response(500, text="oops"))
        with self.assertRaises(FetchError) as ctx:
            await provider.fetch("AAA")
        self.assertEqual(ctx.exception.reason, "http 500")

    async def test_network_error(self):
        def down(request):
            raise httpx.ConnectError("refused", request=request)

        provider = self.make(down)
        with self.assertRaises(FetchError):
            await provider.fetch("AAA")

    async def test_unknown_symbol_is_not_requested(self):
        provider = self.make(lambda r: httpx.Response(200, json=QUOTE_OK))
        with self.assertRaises(FetchError):
            await provider.fetch("NOPE")
        self.assertEqual(self.requests, [])

    async def test_history_sorted_with_chained_previous_close(self):
        payload = {
            "values": [
                {"datetime": "2024-01-03", "open": "11", "high": "12", "low": "10", "close": "11.5", "volume": "5"},
                {"datetime": "2024-01-02", "open": "10", "high": "11", "low": "9", "close": "10.5", "volume": "4"},
                {"datetime": "bad", "open": "1"},
            ]
        }
        provider = self.make(lambda r: httpx.Response(200, json=payload))
        bars = await provider.fetch_history("SPY", 730)

        self.assertEqual(self.requests[0].url.params["interval"], "1day")
        self.assertEqual(self.requests[0].url.params["outputsize"], "730")
        self.assertEqual([b.timestamp for b in bars], [
            datetime(2024, 1, 2, tzinfo=timezone.utc),
            datetime(2024, 1, 3, tzinfo=timezone.utc),
        ])
        self.assertEqual(bars[0].previous_close, 10.0)
        self.assertEqual(bars[1].previous_close, 10.5)

    async def test_history_without_values_fails(self):
        provider = self.make(lambda r: httpx.Response(200, json={"meta": {}}))
        with self.assertRaises(FetchError):
            await provider.fetch_history("SPY", 10)

    def test_requires_api_key(self):
        with self.assertRaises(RuntimeError):
            TwelveDataProvider(api_key="", registry=small_registry())


if __name__ == "__main__":
    unittest.main()
