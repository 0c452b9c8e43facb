"""Allocation ramp: scale raw targets down until a token has enough tick history."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Mapping, Sequence

import config
from utils.numeric import clamp

logger = logging.getLogger(__name__)

REASON_RAMP = "ramp"
REASON_HARD_CAP = "hard_cap"
REASON_NONE = "none"


@dataclass(frozen=True)
class AllocationRampSettings:
    allocation_ramp_enabled: bool = True
    min_ticks_for_full_alloc: int = 30
    pre_full_alloc_max_pct: float = 0.08
    smooth_ramp: bool = True
    hard_cap_before_full: bool = True
    max_position_pct_per_asset: float = 0.35

    @classmethod
    def from_config(cls) -> "AllocationRampSettings":
        return cls(
            allocation_ramp_enabled=bool(getattr(config, "ALLOCATION_RAMP_ENABLED", True)),
            min_ticks_for_full_alloc=int(getattr(config, "MIN_TICKS_FOR_FULL_ALLOC", 30)),
            pre_full_alloc_max_pct=float(getattr(config, "PRE_FULL_ALLOC_MAX_PCT", 0.08)),
            smooth_ramp=bool(getattr(config, "SMOOTH_RAMP", True)),
            hard_cap_before_full=bool(getattr(config, "HARD_CAP_BEFORE_FULL", True)),
            max_position_pct_per_asset=float(getattr(config, "MAX_POSITION_PCT_PER_ASSET", 0.35)),
        )


@dataclass(frozen=True)
class RampResult:
    effective_target_pct: float
    raw_target_pct: float
    ticks_observed: int
    confidence: float
    was_reduced: bool
    reason: str

    @property
    def reduction_pct(self) -> float:
        return self.raw_target_pct - self.effective_target_pct


@dataclass(frozen=True)
class TargetAllocation:
    mint: str
    target_pct: float
    raw_target_pct: float
    score: float = 0.0
    regime: str = ""
    ramp_info: RampResult | None = None


def compute_effective_target_pct(
    raw_target_pct: float,
    ticks_observed: int | None,
    settings: AllocationRampSettings,
) -> RampResult:
    """Pure ramp math; callers decide whether to log via ``log_ramp_reduction``."""
    ticks = int(ticks_observed or 0)
    if not settings.allocation_ramp_enabled or settings.min_ticks_for_full_alloc <= 0:
        return RampResult(
            effective_target_pct=raw_target_pct,
            raw_target_pct=raw_target_pct,
            ticks_observed=ticks,
            confidence=1.0,
            was_reduced=False,
            reason=REASON_NONE,
        )

    confidence = clamp(ticks / settings.min_ticks_for_full_alloc, 0.0, 1.0)
    if settings.smooth_ramp:
        # sqrt front-loads confidence: 50% of the way there at 25% of the ticks.
        confidence = math.sqrt(confidence)

    effective = raw_target_pct * confidence
    reason = REASON_RAMP if confidence < 1.0 else REASON_NONE

    if settings.hard_cap_before_full and ticks < settings.min_ticks_for_full_alloc:
        if effective > settings.pre_full_alloc_max_pct:
            effective = settings.pre_full_alloc_max_pct
            reason = REASON_HARD_CAP

    effective = clamp(effective, 0.0, raw_target_pct)
    # Per-asset ceiling always wins over ramp math.
    effective = clamp(effective, 0.0, settings.max_position_pct_per_asset)

    return RampResult(
        effective_target_pct=effective,
        raw_target_pct=raw_target_pct,
        ticks_observed=ticks,
        confidence=confidence,
        was_reduced=effective < raw_target_pct,
        reason=reason,
    )


def log_ramp_reduction(
    result: RampResult,
    settings: AllocationRampSettings,
    *,
    mint: str = "",
    symbol: str = "",
    min_reduction_pct: float | None = None,
) -> bool:
    threshold = (
        float(getattr(config, "RAMP_LOG_MIN_REDUCTION_PCT", 0.01))
        if min_reduction_pct is None
        else float(min_reduction_pct)
    )
    if result.reduction_pct < threshold:
        return False
    logger.info(
        "ALLOCATION_RAMP target_reduced mint=%s symbol=%s ticks=%s/%s raw=%.2f%% effective=%.2f%% "
        "confidence=%.3f pre_full_cap=%.2f%% reason=%s reduction=%.2f%%",
        mint or "unknown",
        symbol or "unknown",
        result.ticks_observed,
        settings.min_ticks_for_full_alloc,
        result.raw_target_pct * 100.0,
        result.effective_target_pct * 100.0,
        result.confidence,
        settings.pre_full_alloc_max_pct * 100.0,
        result.reason,
        result.reduction_pct * 100.0,
    )
    return True


def apply_ramp_to_targets(
    targets: Sequence[TargetAllocation],
    tick_counts_by_mint: Mapping[str, int],
    settings: AllocationRampSettings,
    *,
    symbols_by_mint: Mapping[str, str] | None = None,
) -> list[TargetAllocation]:
    symbols = symbols_by_mint or {}
    out: list[TargetAllocation] = []
    for target in targets:
        ramp = compute_effective_target_pct(
            target.target_pct,
            tick_counts_by_mint.get(target.mint, 0),
            settings,
        )
        log_ramp_reduction(ramp, settings, mint=target.mint, symbol=str(symbols.get(target.mint, "") or ""))
        out.append(replace(target, target_pct=ramp.effective_target_pct, ramp_info=ramp))
    return out
