"""One polling tick of allocation decisions.

The scheduler hands in raw targets from portfolio construction, the current
positions and per-asset tick counts. This module runs them through the ramp,
the hysteresis book, the stuck-target tracker and the sell gate, and returns
a plan. It never places orders.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Mapping, Sequence

import config
from monitor.sellability import SellabilityChecker, SellabilityCheckResult
from trading.allocation_ramp import (
    AllocationRampSettings,
    RampResult,
    TargetAllocation,
    apply_ramp_to_targets,
)
from trading.rebalance_hysteresis import (
    RebalanceSellGateResult,
    RebalanceSellGateSettings,
    log_rebalance_gate,
)
from trading.run_context import TradingContext
from trading.stuck_target_watchdog import StuckCheckResult
from utils.log_contracts import DecisionEventWriter

logger = logging.getLogger(__name__)

ACTION_BUY = "buy"
ACTION_HOLD = "hold"
ACTION_SELL = "sell"
ACTION_SELL_GATED = "sell_gated"
ACTION_BLOCKED = "blocked"

ACTIONS = (ACTION_BUY, ACTION_HOLD, ACTION_SELL, ACTION_SELL_GATED, ACTION_BLOCKED)


@dataclass(frozen=True)
class Position:
    mint: str
    current_pct: float
    entry_ts: float | None = None
    symbol: str = ""


@dataclass(frozen=True)
class AssetDecision:
    mint: str
    action: str
    target_pct: float
    raw_target_pct: float
    current_pct: float
    reason: str | None = None
    proceeds_usd: float = 0.0
    ramp: RampResult | None = None
    gate: RebalanceSellGateResult | None = None
    stuck: StuckCheckResult | None = None


@dataclass
class TickPlan:
    decisions: list[AssetDecision] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def counts(self) -> dict[str, int]:
        counter = Counter(d.action for d in self.decisions)
        out = {action: int(counter.get(action, 0)) for action in ACTIONS}
        out["failed"] = len(self.failed)
        return out

    def by_action(self, action: str) -> list[AssetDecision]:
        return [d for d in self.decisions if d.action == action]

    def get(self, mint: str) -> AssetDecision | None:
        for decision in self.decisions:
            if decision.mint == mint:
                return decision
        return None


def _decide_asset(
    ctx: TradingContext,
    mint: str,
    target: TargetAllocation | None,
    position: Position | None,
    *,
    equity_usd: float,
    gate_settings: RebalanceSellGateSettings,
    symbol: str,
    now_ts: float,
) -> AssetDecision:
    target_pct = float(target.target_pct) if target else 0.0
    raw_target_pct = float(target.raw_target_pct) if target else 0.0
    ramp = target.ramp_info if target else None
    current_pct = float(position.current_pct) if position else 0.0

    if current_pct > 0:
        ctx.hysteresis.update_target_state(mint, target_pct, current_pct, now_ts=now_ts)
    else:
        ctx.hysteresis.clear_target_state(mint)

    if target_pct > current_pct:
        stuck = ctx.stuck_targets.check(mint, now_ts=now_ts)
        if stuck.blocked:
            logger.info(
                "TICK_BUY_BLOCKED mint=%s symbol=%s reason=%s backoff_min_left=%s",
                mint,
                symbol or "unknown",
                stuck.reason,
                stuck.backoff_minutes_remaining,
            )
            return AssetDecision(
                mint, ACTION_BLOCKED, target_pct, raw_target_pct, current_pct, reason=stuck.reason, ramp=ramp, stuck=stuck
            )
        return AssetDecision(mint, ACTION_BUY, target_pct, raw_target_pct, current_pct, ramp=ramp, stuck=stuck)

    if target_pct < current_pct:
        proceeds_usd = (current_pct - target_pct) * float(equity_usd)
        gate = ctx.hysteresis.evaluate_rebalance_sell_gate(
            mint,
            entry_ts=position.entry_ts if position else None,
            proceeds_usd=proceeds_usd,
            settings=gate_settings,
            now_ts=now_ts,
        )
        log_rebalance_gate(
            gate,
            gate_settings,
            mint=mint,
            symbol=symbol,
            target_pct=target_pct,
            current_pct=current_pct,
        )
        action = ACTION_SELL if gate.allowed else ACTION_SELL_GATED
        return AssetDecision(
            mint,
            action,
            target_pct,
            raw_target_pct,
            current_pct,
            reason=gate.skip_reason,
            proceeds_usd=proceeds_usd,
            ramp=ramp,
            gate=gate,
        )

    return AssetDecision(mint, ACTION_HOLD, target_pct, raw_target_pct, current_pct, ramp=ramp)


def _emit_decision_event(
    events: DecisionEventWriter,
    ctx: TradingContext,
    decision: AssetDecision,
    symbol: str,
    now_ts: float,
) -> None:
    if decision.action in (ACTION_SELL_GATED, ACTION_BLOCKED):
        stage = "rebalance_gate" if decision.action == ACTION_SELL_GATED else "stuck_target"
        reason = decision.reason or ""
    elif decision.ramp is not None and decision.ramp.was_reduced:
        stage = "ramp"
        reason = decision.ramp.reason
    else:
        return
    events.allocation(
        {
            "ts": now_ts,
            "context": ctx.name,
            "decision_stage": stage,
            "decision": decision.action,
            "reason": reason,
            "mint": decision.mint,
            "symbol": symbol,
            "target_pct": decision.target_pct,
            "raw_target_pct": decision.raw_target_pct,
            "current_pct": decision.current_pct,
            "proceeds_usd": decision.proceeds_usd,
        }
    )


def plan_rebalance_tick(
    ctx: TradingContext,
    targets: Sequence[TargetAllocation],
    positions: Mapping[str, Position],
    tick_counts: Mapping[str, int],
    *,
    equity_usd: float,
    ramp_settings: AllocationRampSettings | None = None,
    gate_settings: RebalanceSellGateSettings | None = None,
    symbols_by_mint: Mapping[str, str] | None = None,
    events: DecisionEventWriter | None = None,
    now_ts: float | None = None,
) -> TickPlan:
    """Plan one tick across every asset that has a target or a position.

    Assets held but missing from ``targets`` are treated as target 0. Per-asset
    failures land in ``TickPlan.failed`` and do not stop the rest of the tick.
    """
    now = time.time() if now_ts is None else now_ts
    ramp_settings = ramp_settings or AllocationRampSettings.from_config()
    gate_settings = gate_settings or RebalanceSellGateSettings.from_config()
    symbols = dict(symbols_by_mint or {})
    for mint, position in positions.items():
        if position.symbol:
            symbols.setdefault(mint, position.symbol)

    ramped = apply_ramp_to_targets(targets, tick_counts, ramp_settings, symbols_by_mint=symbols)
    targets_by_mint = {t.mint: t for t in ramped}
    universe = list(targets_by_mint)
    universe.extend(m for m in positions if m not in targets_by_mint)

    plan = TickPlan()
    for mint in universe:
        symbol = str(symbols.get(mint, "") or "")
        try:
            decision = _decide_asset(
                ctx,
                mint,
                targets_by_mint.get(mint),
                positions.get(mint),
                equity_usd=equity_usd,
                gate_settings=gate_settings,
                symbol=symbol,
                now_ts=now,
            )
        except (TypeError, ValueError) as exc:
            plan.failed[mint] = str(exc)
            logger.warning("TICK_ASSET_FAILED context=%s mint=%s err=%s", ctx.name, mint, exc)
            continue
        plan.decisions.append(decision)
        if events is not None:
            _emit_decision_event(events, ctx, decision, symbol, now)

    counts = plan.counts
    telemetry = ctx.telemetry
    telemetry.ticks += 1
    telemetry.tick_errors += counts["failed"]
    telemetry.ramp_reduced += sum(1 for t in ramped if t.ramp_info is not None and t.ramp_info.was_reduced)
    telemetry.sells_allowed += counts[ACTION_SELL]
    telemetry.sells_gated += counts[ACTION_SELL_GATED]
    telemetry.buys_blocked += counts[ACTION_BLOCKED]
    logger.info(
        "TICK_PLAN context=%s assets=%s buy=%s hold=%s sell=%s sell_gated=%s blocked=%s failed=%s",
        ctx.name,
        len(universe),
        counts[ACTION_BUY],
        counts[ACTION_HOLD],
        counts[ACTION_SELL],
        counts[ACTION_SELL_GATED],
        counts[ACTION_BLOCKED],
        counts["failed"],
    )
    return plan


@dataclass
class VettingResult:
    results: dict[str, SellabilityCheckResult] = field(default_factory=dict)

    @property
    def passed_mints(self) -> list[str]:
        return [mint for mint, r in self.results.items() if r.passed]

    @property
    def passed(self) -> int:
        return len(self.passed_mints)

    @property
    def failed(self) -> int:
        return len(self.results) - self.passed

    @property
    def fail_reasons(self) -> dict[str, int]:
        return dict(Counter(r.fail_reason for r in self.results.values() if not r.passed and r.fail_reason))


async def vet_new_buys(
    ctx: TradingContext,
    checker: SellabilityChecker,
    mints: Sequence[str],
    amount: str | int,
    slippage_bps: int | None = None,
    *,
    events: DecisionEventWriter | None = None,
) -> VettingResult:
    """Sellability-check each mint in turn; quote providers are rate limited, so no fan-out."""
    if slippage_bps is None:
        slippage_bps = int(getattr(config, "MAX_SLIPPAGE_BPS", 100))
    out = VettingResult()
    for mint in mints:
        if mint in out.results:
            continue
        result = await checker.check(mint, amount, slippage_bps)
        out.results[mint] = result
        if result.passed:
            ctx.telemetry.sellability_passed += 1
            continue
        ctx.telemetry.sellability_failed += 1
        if events is not None:
            events.allocation(
                {
                    "context": ctx.name,
                    "decision_stage": "sellability",
                    "decision": "reject",
                    "reason": result.fail_reason or "",
                    "mint": mint,
                    "round_trip_ratio": result.round_trip_ratio,
                    "sell_price_impact_pct": result.sell_price_impact_pct,
                }
            )
    if out.results:
        logger.info(
            "PREBUY_VETTING context=%s checked=%s passed=%s failed=%s reasons=%s",
            ctx.name,
            len(out.results),
            out.passed,
            out.failed,
            out.fail_reasons,
        )
    return out
