from __future__ import annotations

import asyncio
import unittest

import config
from monitor.quote_client import JupiterQuoteClient, QuoteError, QuoteResponse
from monitor.sellability import (
    BUY_QUOTE_ZERO,
    CHECK_ERROR,
    ROUNDTRIP_RATIO_LOW,
    SELL_IMPACT_HIGH,
    SELL_QUOTE_FAILED,
    SELL_QUOTE_ZERO,
    SellabilityChecker,
    SellabilitySettings,
)
from utils.http_client import HttpResult

NATIVE = "So11111111111111111111111111111111111111112"
TOKEN = "TokenMint111111111111111111111111111111111"


class _StubQuotes:
    def __init__(self, *responses: QuoteResponse | Exception) -> None:
        self._responses = list(responses)
        self.calls: list[tuple[str, str, str, int]] = []

    async def quote(self, input_mint: str, output_mint: str, amount: str, slippage_bps: int) -> QuoteResponse:
        self.calls.append((input_mint, output_mint, amount, slippage_bps))
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _q(out_amount: str, impact: str = "0.001") -> QuoteResponse:
    return QuoteResponse(out_amount=out_amount, price_impact_pct=impact)


class SellabilityCheckTests(unittest.TestCase):
    def _checker(self, quotes: _StubQuotes) -> SellabilityChecker:
        return SellabilityChecker(quotes, SellabilitySettings(), native_mint=NATIVE)

    def test_zero_buy_quote_never_asks_for_sell(self) -> None:
        for out in ("0", ""):
            quotes = _StubQuotes(_q(out))
            result = asyncio.run(self._checker(quotes).check(TOKEN, "1000000", 100))
            self.assertFalse(result.passed)
            self.assertEqual(result.fail_reason, BUY_QUOTE_ZERO)
            self.assertEqual(len(quotes.calls), 1)
            self.assertEqual(quotes.calls[0], (NATIVE, TOKEN, "1000000", 100))

    def test_sell_quote_fault_is_honeypot_evidence(self) -> None:
        quotes = _StubQuotes(_q("5000"), QuoteError("no route"))
        result = asyncio.run(self._checker(quotes).check(TOKEN, "1000000", 100))
        self.assertFalse(result.passed)
        self.assertEqual(result.fail_reason, SELL_QUOTE_FAILED)
        self.assertEqual(result.buy_quote_out_amount, "5000")

    def test_zero_sell_quote(self) -> None:
        quotes = _StubQuotes(_q("5000"), _q("0"))
        result = asyncio.run(self._checker(quotes).check(TOKEN, "1000000", 100))
        self.assertEqual(result.fail_reason, SELL_QUOTE_ZERO)

    def test_sell_leg_uses_partial_amount_and_double_slippage(self) -> None:
        quotes = _StubQuotes(_q("5000"), _q("900000", "0.01"))
        result = asyncio.run(self._checker(quotes).check(TOKEN, "1000000", 100))
        self.assertTrue(result.passed)
        self.assertIsNone(result.fail_reason)
        self.assertEqual(quotes.calls[1], (TOKEN, NATIVE, "4500", 200))
        self.assertAlmostEqual(result.round_trip_ratio, 1.0)
        self.assertAlmostEqual(result.sell_price_impact_pct, 0.01)

    def test_low_ratio_fails_even_with_tiny_impact(self) -> None:
        quotes = _StubQuotes(_q("5000"), _q("800000", "0.0001"))
        result = asyncio.run(self._checker(quotes).check(TOKEN, "1000000", 100))
        self.assertFalse(result.passed)
        self.assertEqual(result.fail_reason, ROUNDTRIP_RATIO_LOW)
        self.assertAlmostEqual(result.round_trip_ratio, 0.8 / 0.9)

    def test_high_sell_impact_fails_after_ratio_passes(self) -> None:
        quotes = _StubQuotes(_q("5000"), _q("900000", "0.05"))
        result = asyncio.run(self._checker(quotes).check(TOKEN, "1000000", 100))
        self.assertEqual(result.fail_reason, SELL_IMPACT_HIGH)

    def test_unexpected_faults_become_check_error(self) -> None:
        quotes = _StubQuotes(RuntimeError("boom"))
        result = asyncio.run(self._checker(quotes).check(TOKEN, "1000000", 100))
        self.assertFalse(result.passed)
        self.assertEqual(result.fail_reason, CHECK_ERROR)

        garbage = _StubQuotes(_q("not-a-number"))
        result = asyncio.run(self._checker(garbage).check(TOKEN, "1000000", 100))
        self.assertEqual(result.fail_reason, CHECK_ERROR)

    def test_non_positive_amount_fails_before_quoting(self) -> None:
        quotes = _StubQuotes()
        result = asyncio.run(self._checker(quotes).check(TOKEN, "0", 100))
        self.assertEqual(result.fail_reason, CHECK_ERROR)
        self.assertEqual(quotes.calls, [])

    def test_custom_fraction_and_multiplier(self) -> None:
        settings = SellabilitySettings(sell_amount_fraction=0.5, sell_slippage_mult=3.0)
        quotes = _StubQuotes(_q("5000"), _q("500000"))
        checker = SellabilityChecker(quotes, settings, native_mint=NATIVE)
        result = asyncio.run(checker.check(TOKEN, 1_000_000, 50))
        self.assertEqual(quotes.calls[1], (TOKEN, NATIVE, "2500", 150))
        self.assertAlmostEqual(result.round_trip_ratio, 1.0)

    def test_runtime_stats_count_reasons(self) -> None:
        quotes = _StubQuotes(_q("0"), _q("5000"), _q("900000"), _q("0"))
        checker = self._checker(quotes)
        asyncio.run(checker.check(TOKEN, "1000", 100))
        asyncio.run(checker.check(TOKEN, "1000000", 100))
        asyncio.run(checker.check(TOKEN, "1000", 100))
        stats = checker.runtime_stats(reset=True)
        self.assertEqual(stats["checks_total"], 3)
        self.assertEqual(stats["passed"], 1)
        self.assertEqual(stats["failed"], 2)
        self.assertEqual(stats["fail_reason_counts"], {BUY_QUOTE_ZERO: 2})
        self.assertEqual(checker.runtime_stats()["checks_total"], 0)


class _StubHttp:
    def __init__(self, result: HttpResult) -> None:
        self._result = result
        self.calls: list[dict] = []

    async def get_json(self, url: str, **kwargs) -> HttpResult:  # type: ignore[no-untyped-def]
        self.calls.append({"url": url, **kwargs})
        return self._result

    def snapshot_stats(self, reset: bool = False) -> dict:
        return {}

    async def close(self) -> None:
        return None


class JupiterQuoteClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self._old_key = config.JUP_API_KEY
        config.JUP_API_KEY = ""

    def tearDown(self) -> None:
        config.JUP_API_KEY = self._old_key

    def test_quote_parses_payload(self) -> None:
        http = _StubHttp(HttpResult(ok=True, status=200, data={"outAmount": "123", "priceImpactPct": "0.02"}))
        client = JupiterQuoteClient(http=http, base_url="https://quote.test/v1/quote")  # type: ignore[arg-type]
        quote = asyncio.run(client.quote(NATIVE, TOKEN, "1000", 100))
        self.assertEqual(quote.out_amount, "123")
        self.assertEqual(quote.price_impact_pct, "0.02")
        params = http.calls[0]["params"]
        self.assertEqual(params["swapMode"], "ExactIn")
        self.assertEqual(params["slippageBps"], "100")
        self.assertEqual(http.calls[0]["headers"], {})

    def test_missing_out_amount_is_empty_not_error(self) -> None:
        http = _StubHttp(HttpResult(ok=True, status=200, data={}))
        client = JupiterQuoteClient(http=http, base_url="https://quote.test/v1/quote")  # type: ignore[arg-type]
        quote = asyncio.run(client.quote(NATIVE, TOKEN, "1000", 100))
        self.assertEqual(quote.out_amount, "")

    def test_http_failure_raises_quote_error(self) -> None:
        http = _StubHttp(HttpResult(ok=False, status=400, data=None, error="bad_request"))
        client = JupiterQuoteClient(http=http, base_url="https://quote.test/v1/quote")  # type: ignore[arg-type]
        with self.assertRaises(QuoteError):
            asyncio.run(client.quote(NATIVE, TOKEN, "1000", 100))

    def test_api_key_header(self) -> None:
        config.JUP_API_KEY = "k-123"
        http = _StubHttp(HttpResult(ok=True, status=200, data={"outAmount": "1"}))
        client = JupiterQuoteClient(http=http, base_url="https://quote.test/v1/quote")  # type: ignore[arg-type]
        asyncio.run(client.quote(NATIVE, TOKEN, "1000", 100))
        self.assertEqual(http.calls[0]["headers"], {"x-api-key": "k-123"})


if __name__ == "__main__":
    unittest.main()
