"""Rebalance sell hysteresis.

A rebalance trim only fires after the target has stayed below the current
allocation for several consecutive ticks, the position is old enough, and the
trim is big enough to be worth the fees. Per-asset state lives in a
``HysteresisBook`` owned by the run context, never in module globals.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Union

import config

logger = logging.getLogger(__name__)

SKIP_MIN_HOLD = "MIN_HOLD_BEFORE_REBALANCE_SELL"
SKIP_NOT_PERSISTENT = "TARGET_DROP_NOT_PERSISTENT"
SKIP_TRIM_TOO_SMALL = "TRIM_TOO_SMALL"


@dataclass(frozen=True)
class Stable:
    """Target is not below the current allocation."""

    @property
    def ticks(self) -> int:
        return 0


@dataclass(frozen=True)
class Dropping:
    """Target has been below the current allocation for ``ticks`` consecutive observations."""

    ticks: int

    def __post_init__(self) -> None:
        if self.ticks < 1:
            raise ValueError(f"Dropping requires ticks >= 1, got {self.ticks}")


TargetPhase = Union[Stable, Dropping]


@dataclass(frozen=True)
class RebalanceHysteresisState:
    phase: TargetPhase
    last_updated_at: float

    @property
    def consecutive_ticks_below_current(self) -> int:
        return self.phase.ticks


def next_phase(phase: TargetPhase | None, target_pct: float, current_pct: float) -> TargetPhase | None:
    """Transition function: increment while dropping, reset on reversal, stay absent if never dropped."""
    if target_pct < current_pct:
        return Dropping(phase.ticks + 1 if phase is not None else 1)
    if phase is None:
        return None
    return Stable()


@dataclass(frozen=True)
class RebalanceSellGateSettings:
    min_hold_minutes: float = 15.0
    confirm_ticks: int = 3
    min_trim_usd: float = 20.0

    @classmethod
    def from_config(cls) -> "RebalanceSellGateSettings":
        return cls(
            min_hold_minutes=float(getattr(config, "REBALANCE_SELL_MIN_HOLD_MINUTES", 15.0)),
            confirm_ticks=int(getattr(config, "REBALANCE_SELL_TARGET_DROP_CONFIRM_TICKS", 3)),
            min_trim_usd=float(getattr(config, "REBALANCE_SELL_MIN_TRIM_USD", 20.0)),
        )


@dataclass(frozen=True)
class RebalanceSellGateResult:
    allowed: bool
    skip_reason: str | None
    age_minutes: float
    confirm_ticks: int
    proceeds_usd: float


class HysteresisBook:
    def __init__(self) -> None:
        self._states: dict[str, RebalanceHysteresisState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def update_target_state(
        self,
        mint: str,
        target_pct: float,
        current_pct: float,
        *,
        now_ts: float | None = None,
    ) -> RebalanceHysteresisState | None:
        existing = self._states.get(mint)
        phase = next_phase(existing.phase if existing else None, target_pct, current_pct)
        if phase is None:
            return None
        state = RebalanceHysteresisState(phase=phase, last_updated_at=time.time() if now_ts is None else now_ts)
        self._states[mint] = state
        return state

    def consecutive_ticks_below_current(self, mint: str) -> int:
        state = self._states.get(mint)
        return state.consecutive_ticks_below_current if state else 0

    def clear_target_state(self, mint: str) -> None:
        self._states.pop(mint, None)

    def clear_all_target_states(self) -> None:
        self._states.clear()

    def snapshot(self) -> Mapping[str, RebalanceHysteresisState]:
        # States are frozen, so a read-only view over a shallow copy is enough.
        return MappingProxyType(dict(self._states))

    def evaluate_rebalance_sell_gate(
        self,
        mint: str,
        *,
        entry_ts: float | None,
        proceeds_usd: float,
        settings: RebalanceSellGateSettings,
        now_ts: float | None = None,
    ) -> RebalanceSellGateResult:
        """Gates run in a fixed order: min hold, persistence, min trim size."""
        now = time.time() if now_ts is None else now_ts
        age_minutes = (now - float(entry_ts)) / 60.0 if entry_ts else math.inf
        ticks = self.consecutive_ticks_below_current(mint)

        skip_reason: str | None = None
        if age_minutes < settings.min_hold_minutes:
            skip_reason = SKIP_MIN_HOLD
        elif ticks < settings.confirm_ticks:
            skip_reason = SKIP_NOT_PERSISTENT
        elif proceeds_usd < settings.min_trim_usd:
            skip_reason = SKIP_TRIM_TOO_SMALL

        return RebalanceSellGateResult(
            allowed=skip_reason is None,
            skip_reason=skip_reason,
            age_minutes=age_minutes,
            confirm_ticks=ticks,
            proceeds_usd=proceeds_usd,
        )


def log_rebalance_gate(
    result: RebalanceSellGateResult,
    settings: RebalanceSellGateSettings,
    *,
    mint: str,
    symbol: str = "",
    target_pct: float = 0.0,
    current_pct: float = 0.0,
) -> None:
    if result.allowed:
        logger.debug(
            "REBALANCE_SELL_ALLOWED mint=%s symbol=%s ticks=%s proceeds=$%.2f",
            mint,
            symbol or "unknown",
            result.confirm_ticks,
            result.proceeds_usd,
        )
        return
    if result.skip_reason == SKIP_MIN_HOLD:
        detail = f"age_min={result.age_minutes:.1f} min_hold_min={settings.min_hold_minutes:g}"
    elif result.skip_reason == SKIP_NOT_PERSISTENT:
        detail = f"ticks={result.confirm_ticks} required={settings.confirm_ticks}"
    else:
        detail = f"proceeds=${result.proceeds_usd:.2f} min_trim=${settings.min_trim_usd:.2f}"
    logger.info(
        "REBALANCE_SELL_GATED reason=%s mint=%s symbol=%s target=%.2f%% current=%.2f%% %s",
        result.skip_reason,
        mint,
        symbol or "unknown",
        target_pct * 100.0,
        current_pct * 100.0,
        detail,
    )
