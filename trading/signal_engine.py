"""Regime classification and bounded directional score from recent prices."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import config
from utils.numeric import clamp, mean, safe_log_ratio, std

logger = logging.getLogger(__name__)

REGIME_TREND = "trend"
REGIME_RANGE = "range"

SCORE_LIMIT = 3.0
MOMENTUM_LIMIT = 2.0
VOL_EPSILON = 1e-8

FAST_MA_WINDOW = 10
SLOW_MA_WINDOW = 60
VOL_WINDOW = 30


@dataclass(frozen=True)
class Bar:
    ts: float
    price: float


@dataclass
class Signal:
    score: float
    regime: str
    features: dict[str, float] = field(default_factory=dict)

    @property
    def insufficient_ticks(self) -> bool:
        return bool(self.features.get("insufficient_ticks", 0))


@dataclass(frozen=True)
class SignalSettings:
    trend_threshold: float = 0.75
    momentum_factor: float = 0.25
    band: float = 0.05
    min_ticks_for_signals: int = 60

    @classmethod
    def from_config(cls) -> "SignalSettings":
        return cls(
            trend_threshold=float(getattr(config, "STRATEGY_TREND_THRESHOLD", 0.75)),
            momentum_factor=float(getattr(config, "STRATEGY_MOMENTUM_FACTOR", 0.25)),
            band=float(getattr(config, "STRATEGY_BAND", 0.05)),
            min_ticks_for_signals=int(getattr(config, "MIN_TICKS_FOR_SIGNALS", 60)),
        )


@dataclass
class SignalBatch:
    signals: dict[str, Signal] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> int:
        return len(self.signals)

    @property
    def failed_count(self) -> int:
        return len(self.failed)


def _window_log_returns(prices: Sequence[float]) -> list[float]:
    # The first element of the window has no predecessor and contributes a zero return.
    return [0.0 if i == 0 else safe_log_ratio(prices[i], prices[i - 1]) for i in range(len(prices))]


def _normalized(diff: float, base: float, vol: float) -> float:
    if vol == 0 or base == 0:
        return 0.0
    return diff / (base * vol)


def compute_signal(bars: Sequence[Bar], settings: SignalSettings) -> Signal:
    """Build a tiny trend / mean-reversion / volatility feature vector and score it.

    Positive scores favour holding the token, negative scores favour moving back
    to the native asset. Fewer than ``min_ticks_for_signals`` bars always yield a
    neutral ``range`` signal flagged with ``insufficient_ticks``.
    """
    n = len(bars)
    if n < settings.min_ticks_for_signals or n == 0:
        return Signal(
            score=0.0,
            regime=REGIME_RANGE,
            features={
                "n": float(n),
                "insufficient_ticks": 1.0,
                "required_ticks": float(settings.min_ticks_for_signals),
                "current_ticks": float(n),
            },
        )

    ps = [float(b.price) for b in bars]
    last = ps[-1]

    ret1 = safe_log_ratio(last, ps[-2]) if n >= 2 else 0.0
    ret5 = safe_log_ratio(last, ps[-6]) if n >= 6 else ret1
    ret30 = safe_log_ratio(last, ps[-31]) if n >= 31 else ret5

    ma_fast = mean(ps[-min(FAST_MA_WINDOW, n):])
    ma_slow = mean(ps[-min(SLOW_MA_WINDOW, n):])
    vol30 = std(_window_log_returns(ps[-min(VOL_WINDOW, n):]))

    trend = _normalized(ma_fast - ma_slow, ma_slow, vol30)
    mr = _normalized(last - ma_slow, ma_slow, vol30)

    regime = REGIME_TREND if abs(trend) > settings.trend_threshold else REGIME_RANGE

    # Dead-zone: trend strength in the trend regime, deviation from mean otherwise.
    driver = trend if regime == REGIME_TREND else mr
    band_suppressed = abs(driver) <= settings.band
    if band_suppressed:
        score = 0.0
    elif regime == REGIME_TREND:
        score = clamp(trend, -SCORE_LIMIT, SCORE_LIMIT)
    else:
        score = clamp(-mr, -SCORE_LIMIT, SCORE_LIMIT)

    if not band_suppressed:
        score += settings.momentum_factor * clamp(ret5 / max(VOL_EPSILON, vol30), -MOMENTUM_LIMIT, MOMENTUM_LIMIT)

    return Signal(
        score=score,
        regime=regime,
        features={
            "ret1": ret1,
            "ret5": ret5,
            "ret30": ret30,
            "ma_fast": ma_fast,
            "ma_slow": ma_slow,
            "vol30": vol30,
            "trend": trend,
            "mr": mr,
            "band": settings.band,
            "band_suppressed": 1.0 if band_suppressed else 0.0,
        },
    )


def log_signal(signal: Signal, *, mint: str = "", symbol: str = "") -> None:
    if signal.insufficient_ticks:
        logger.info(
            "SIGNAL_BLOCKED reason=INSUFFICIENT_TICKS mint=%s symbol=%s current=%s required=%s",
            mint or "unknown",
            symbol or "unknown",
            int(signal.features.get("current_ticks", 0)),
            int(signal.features.get("required_ticks", 0)),
        )
        return
    logger.debug(
        "SIGNAL mint=%s symbol=%s regime=%s score=%.4f trend=%.4f mr=%.4f vol=%.6f suppressed=%s",
        mint or "unknown",
        symbol or "unknown",
        signal.regime,
        signal.score,
        signal.features.get("trend", 0.0),
        signal.features.get("mr", 0.0),
        signal.features.get("vol30", 0.0),
        bool(signal.features.get("band_suppressed", 0.0)),
    )


def compute_signals(
    bars_by_mint: Mapping[str, Sequence[Bar]],
    settings: SignalSettings,
    *,
    symbols_by_mint: Mapping[str, str] | None = None,
) -> SignalBatch:
    batch = SignalBatch()
    symbols: Mapping[str, Any] = symbols_by_mint or {}
    for mint, bars in bars_by_mint.items():
        try:
            signal = compute_signal(bars, settings)
        except (TypeError, ValueError, AttributeError) as exc:
            batch.failed[mint] = f"{exc.__class__.__name__}:{exc}"
            logger.warning("SIGNAL_FAILED mint=%s err=%s", mint, exc)
            continue
        batch.signals[mint] = signal
        log_signal(signal, mint=mint, symbol=str(symbols.get(mint, "") or ""))
    return batch
