"""Pre-buy sellability (honeypot) check via a simulated buy-then-sell quote pair."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import config
from monitor.quote_client import QuoteProvider

logger = logging.getLogger(__name__)

BUY_QUOTE_ZERO = "BUY_QUOTE_ZERO"
SELL_QUOTE_FAILED = "SELL_QUOTE_FAILED"
SELL_QUOTE_ZERO = "SELL_QUOTE_ZERO"
ROUNDTRIP_RATIO_LOW = "ROUNDTRIP_RATIO_LOW"
SELL_IMPACT_HIGH = "SELL_IMPACT_HIGH"
CHECK_ERROR = "CHECK_ERROR"


@dataclass(frozen=True)
class SellabilitySettings:
    roundtrip_min_ratio: float = 0.92
    max_sell_impact_pct: float = 0.03
    # Partial round trip tolerates minor self-impact asymmetry on the sell leg.
    sell_amount_fraction: float = 0.90
    sell_slippage_mult: float = 2.0

    @classmethod
    def from_config(cls) -> "SellabilitySettings":
        return cls(
            roundtrip_min_ratio=float(getattr(config, "PREBUY_ROUNDTRIP_MIN_RATIO", 0.92)),
            max_sell_impact_pct=float(getattr(config, "PREBUY_MAX_SELL_IMPACT_PCT", 0.03)),
            sell_amount_fraction=float(getattr(config, "PREBUY_SELL_AMOUNT_FRACTION", 0.90)),
            sell_slippage_mult=float(getattr(config, "PREBUY_SELL_SLIPPAGE_MULT", 2.0)),
        )


@dataclass
class SellabilityCheckResult:
    passed: bool = False
    fail_reason: str | None = None
    buy_quote_out_amount: str | None = None
    sell_quote_out_amount: str | None = None
    round_trip_ratio: float | None = None
    sell_price_impact_pct: float | None = None
    buy_price_impact_pct: float | None = None


def _parse_amount(raw: str | None) -> int:
    text = str(raw or "").strip()
    if not text:
        return 0
    return int(text)


def _parse_impact(raw: str | None) -> float:
    text = str(raw or "").strip()
    if not text:
        return 0.0
    return float(text)


class SellabilityChecker:
    def __init__(
        self,
        quotes: QuoteProvider,
        settings: SellabilitySettings | None = None,
        native_mint: str | None = None,
    ) -> None:
        self._quotes = quotes
        self.settings = settings or SellabilitySettings.from_config()
        self._native_mint = native_mint or str(getattr(config, "NATIVE_MINT", ""))
        self._checks_total = 0
        self._passed = 0
        self._fail_reasons: dict[str, int] = {}

    def runtime_stats(self, reset: bool = False) -> dict[str, int | dict[str, int]]:
        out: dict[str, int | dict[str, int]] = {
            "checks_total": int(self._checks_total),
            "passed": int(self._passed),
            "failed": int(self._checks_total - self._passed),
            "fail_reason_counts": dict(self._fail_reasons),
        }
        if reset:
            self._checks_total = 0
            self._passed = 0
            self._fail_reasons = {}
        return out

    async def check(self, token_mint: str, buy_amount: str | int, slippage_bps: int) -> SellabilityCheckResult:
        """Never raises: every outcome, including provider faults, comes back as a result value."""
        self._checks_total += 1
        result = SellabilityCheckResult()
        try:
            await self._run(result, token_mint, str(buy_amount), int(slippage_bps))
        except Exception as exc:
            result.passed = False
            result.fail_reason = CHECK_ERROR
            logger.error("SELLABILITY_CHECK unexpected_error token=%s err=%s", token_mint, exc)
        if result.passed:
            self._passed += 1
        elif result.fail_reason:
            self._fail_reasons[result.fail_reason] = int(self._fail_reasons.get(result.fail_reason, 0)) + 1
        return result

    async def _run(self, result: SellabilityCheckResult, token_mint: str, buy_amount: str, slippage_bps: int) -> None:
        buy_in = _parse_amount(buy_amount)
        if buy_in <= 0:
            result.fail_reason = CHECK_ERROR
            logger.warning("SELLABILITY_CHECK invalid_buy_amount token=%s amount=%s", token_mint, buy_amount)
            return

        buy_quote = await self._quotes.quote(self._native_mint, token_mint, buy_amount, slippage_bps)
        result.buy_quote_out_amount = buy_quote.out_amount
        result.buy_price_impact_pct = _parse_impact(buy_quote.price_impact_pct)

        buy_out = _parse_amount(buy_quote.out_amount)
        if buy_out <= 0:
            result.fail_reason = BUY_QUOTE_ZERO
            logger.warning("SELLABILITY_CHECK buy_quote_zero token=%s amount=%s", token_mint, buy_amount)
            return

        fraction = self.settings.sell_amount_fraction
        sell_amount = str(math.floor(buy_out * fraction))
        sell_slippage = int(round(slippage_bps * self.settings.sell_slippage_mult))
        try:
            sell_quote = await self._quotes.quote(token_mint, self._native_mint, sell_amount, sell_slippage)
        except Exception as exc:
            # No sell-side route is itself honeypot evidence, not a fault.
            result.fail_reason = SELL_QUOTE_FAILED
            logger.warning(
                "SELLABILITY_CHECK sell_quote_failed token=%s amount=%s err=%s",
                token_mint,
                sell_amount,
                exc,
            )
            return

        result.sell_quote_out_amount = sell_quote.out_amount
        result.sell_price_impact_pct = _parse_impact(sell_quote.price_impact_pct)

        sell_out = _parse_amount(sell_quote.out_amount)
        if sell_out <= 0:
            result.fail_reason = SELL_QUOTE_ZERO
            logger.warning("SELLABILITY_CHECK sell_quote_zero token=%s amount=%s", token_mint, sell_amount)
            return

        ratio = (sell_out / fraction) / buy_in
        result.round_trip_ratio = ratio
        if ratio < self.settings.roundtrip_min_ratio:
            result.fail_reason = ROUNDTRIP_RATIO_LOW
            logger.warning(
                "SELLABILITY_CHECK roundtrip_ratio_low token=%s ratio=%.4f min=%.4f buy_in=%s sell_out=%s",
                token_mint,
                ratio,
                self.settings.roundtrip_min_ratio,
                buy_in,
                sell_out,
            )
            return

        if result.sell_price_impact_pct > self.settings.max_sell_impact_pct:
            result.fail_reason = SELL_IMPACT_HIGH
            logger.warning(
                "SELLABILITY_CHECK sell_impact_high token=%s impact=%.4f max=%.4f",
                token_mint,
                result.sell_price_impact_pct,
                self.settings.max_sell_impact_pct,
            )
            return

        result.passed = True
        logger.info(
            "SELLABILITY_CHECK passed token=%s ratio=%.4f sell_impact=%.4f buy_impact=%.4f",
            token_mint,
            ratio,
            result.sell_price_impact_pct,
            result.buy_price_impact_pct or 0.0,
        )
