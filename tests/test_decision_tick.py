from __future__ import annotations

import asyncio
import json
import tempfile
import unittest
from pathlib import Path

from monitor.quote_client import QuoteResponse
from monitor.sellability import BUY_QUOTE_ZERO, SellabilityChecker, SellabilitySettings
from trading.allocation_ramp import AllocationRampSettings, TargetAllocation
from trading.decision_tick import (
    ACTION_BLOCKED,
    ACTION_BUY,
    ACTION_HOLD,
    ACTION_SELL,
    ACTION_SELL_GATED,
    Position,
    plan_rebalance_tick,
    vet_new_buys,
)
from trading.rebalance_hysteresis import SKIP_NOT_PERSISTENT, RebalanceSellGateSettings
from trading.run_context import TradingContext
from trading.stuck_target_watchdog import OUTCOME_FAILED, StuckTargetSettings, StuckTargetTracker
from utils.log_contracts import DecisionEventWriter

NOW = 1_700_000_000.0
NO_RAMP = AllocationRampSettings(allocation_ramp_enabled=False)
GATE = RebalanceSellGateSettings(min_hold_minutes=15.0, confirm_ticks=3, min_trim_usd=20.0)


def _target(mint: str, pct: float) -> TargetAllocation:
    return TargetAllocation(mint=mint, target_pct=pct, raw_target_pct=pct)


def _ctx() -> TradingContext:
    return TradingContext(
        name="paper",
        stuck_targets=StuckTargetTracker(StuckTargetSettings(enabled=True, max_attempts=3, backoff_minutes_base=5.0)),
    )


class PlanRebalanceTickTests(unittest.TestCase):
    def _plan(self, ctx: TradingContext, targets, positions, **kwargs):  # type: ignore[no-untyped-def]
        kwargs.setdefault("ramp_settings", NO_RAMP)
        kwargs.setdefault("gate_settings", GATE)
        kwargs.setdefault("now_ts", NOW)
        return plan_rebalance_tick(ctx, targets, positions, kwargs.pop("tick_counts", {}), equity_usd=1000.0, **kwargs)

    def test_classifies_every_asset(self) -> None:
        ctx = _ctx()
        for _ in range(3):
            ctx.stuck_targets.record_outcome("D", OUTCOME_FAILED, now_ts=NOW)
        old = NOW - 3600
        plan = self._plan(
            ctx,
            [_target("A", 0.2), _target("B", 0.1), _target("C", 0.2), _target("D", 0.2)],
            {
                "B": Position("B", 0.3, entry_ts=old),
                "C": Position("C", 0.2, entry_ts=old),
                "E": Position("E", 0.1, entry_ts=old),
            },
        )
        self.assertEqual(plan.get("A").action, ACTION_BUY)
        self.assertEqual(plan.get("B").action, ACTION_SELL_GATED)
        self.assertEqual(plan.get("B").reason, SKIP_NOT_PERSISTENT)
        self.assertAlmostEqual(plan.get("B").proceeds_usd, 200.0)
        self.assertEqual(plan.get("C").action, ACTION_HOLD)
        self.assertEqual(plan.get("D").action, ACTION_BLOCKED)
        # Held without a target means target zero.
        self.assertEqual(plan.get("E").target_pct, 0.0)
        self.assertEqual(plan.get("E").action, ACTION_SELL_GATED)
        self.assertEqual(
            plan.counts,
            {ACTION_BUY: 1, ACTION_HOLD: 1, ACTION_SELL: 0, ACTION_SELL_GATED: 2, ACTION_BLOCKED: 1, "failed": 0},
        )
        self.assertEqual(ctx.telemetry.ticks, 1)
        self.assertEqual(ctx.telemetry.buys_blocked, 1)
        self.assertEqual(ctx.telemetry.sells_gated, 2)

    def test_sell_allowed_after_confirm_ticks(self) -> None:
        ctx = _ctx()
        positions = {"B": Position("B", 0.3, entry_ts=NOW - 3600)}
        actions = []
        for i in range(3):
            plan = self._plan(ctx, [_target("B", 0.1)], positions, now_ts=NOW + i * 60)
            actions.append(plan.get("B").action)
        self.assertEqual(actions, [ACTION_SELL_GATED, ACTION_SELL_GATED, ACTION_SELL])
        self.assertEqual(ctx.telemetry.sells_allowed, 1)

        # Position closed: hysteresis state is dropped.
        self._plan(ctx, [_target("B", 0.1)], {}, now_ts=NOW + 600)
        self.assertEqual(ctx.hysteresis.consecutive_ticks_below_current("B"), 0)
        self.assertEqual(len(ctx.hysteresis), 0)

    def test_reversal_resets_persistence(self) -> None:
        ctx = _ctx()
        positions = {"B": Position("B", 0.3, entry_ts=NOW - 3600)}
        self._plan(ctx, [_target("B", 0.1)], positions)
        self._plan(ctx, [_target("B", 0.1)], positions)
        self._plan(ctx, [_target("B", 0.4)], positions)
        plan = self._plan(ctx, [_target("B", 0.1)], positions)
        self.assertEqual(plan.get("B").action, ACTION_SELL_GATED)
        self.assertEqual(plan.get("B").gate.confirm_ticks, 1)

    def test_ramp_applied_before_decisions(self) -> None:
        ctx = _ctx()
        ramp = AllocationRampSettings(
            allocation_ramp_enabled=True,
            min_ticks_for_full_alloc=40,
            smooth_ramp=False,
            hard_cap_before_full=False,
            max_position_pct_per_asset=1.0,
        )
        plan = self._plan(
            ctx,
            [_target("A", 0.2), _target("N", 0.2)],
            {"A": Position("A", 0.1, entry_ts=NOW - 3600)},
            ramp_settings=ramp,
            tick_counts={"A": 20, "N": 0},
        )
        self.assertAlmostEqual(plan.get("A").target_pct, 0.1)
        self.assertEqual(plan.get("A").raw_target_pct, 0.2)
        self.assertEqual(plan.get("A").action, ACTION_HOLD)
        self.assertEqual(plan.get("N").target_pct, 0.0)
        self.assertEqual(plan.get("N").action, ACTION_HOLD)
        self.assertEqual(ctx.telemetry.ramp_reduced, 2)

    def test_bad_position_is_collected_not_raised(self) -> None:
        ctx = _ctx()
        plan = self._plan(
            ctx,
            [_target("A", 0.2), _target("X", 0.2)],
            {"X": Position("X", "abc")},  # type: ignore[arg-type]
        )
        self.assertEqual(plan.get("A").action, ACTION_BUY)
        self.assertIn("X", plan.failed)
        self.assertEqual(plan.counts["failed"], 1)
        self.assertEqual(ctx.telemetry.tick_errors, 1)

    def test_decision_events_written(self) -> None:
        ctx = _ctx()
        for _ in range(3):
            ctx.stuck_targets.record_outcome("D", OUTCOME_FAILED, now_ts=NOW)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "logs" / "decisions.jsonl"
            events = DecisionEventWriter(str(path), run_tag="t1")
            self._plan(
                ctx,
                [_target("B", 0.1), _target("D", 0.2), _target("H", 0.2)],
                {"B": Position("B", 0.3, entry_ts=NOW - 3600), "H": Position("H", 0.2)},
                events=events,
            )
            rows = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
        codes = {row["mint"]: row["reason_code"] for row in rows}
        self.assertEqual(codes, {"B": "GATE_NOT_PERSISTENT", "D": "STUCK_BACKOFF"})
        self.assertTrue(all(row["context"] == "paper" for row in rows))
        self.assertTrue(all(row["run_tag"] == "t1" for row in rows))


class _StubQuotes:
    def __init__(self, out_by_token: dict[str, tuple[str, str]]) -> None:
        self._out = out_by_token
        self.calls = 0

    async def quote(self, input_mint: str, output_mint: str, amount: str, slippage_bps: int) -> QuoteResponse:
        self.calls += 1
        if input_mint == "NATIVE":
            return QuoteResponse(out_amount=self._out[output_mint][0], price_impact_pct="0.001")
        return QuoteResponse(out_amount=self._out[input_mint][1], price_impact_pct="0.001")


class VetNewBuysTests(unittest.TestCase):
    def test_collects_results_and_counts(self) -> None:
        ctx = _ctx()
        quotes = _StubQuotes({"good": ("5000", "900000"), "honeypot": ("0", "0")})
        checker = SellabilityChecker(quotes, SellabilitySettings(), native_mint="NATIVE")
        vetting = asyncio.run(vet_new_buys(ctx, checker, ["good", "honeypot", "good"], "1000000", 100))
        self.assertEqual(vetting.passed_mints, ["good"])
        self.assertEqual(vetting.passed, 1)
        self.assertEqual(vetting.failed, 1)
        self.assertEqual(vetting.fail_reasons, {BUY_QUOTE_ZERO: 1})
        self.assertEqual(quotes.calls, 3)
        self.assertEqual(ctx.telemetry.sellability_passed, 1)
        self.assertEqual(ctx.telemetry.sellability_failed, 1)


class DecisionLoopTests(unittest.TestCase):
    def test_failing_tick_is_logged_and_loop_continues(self) -> None:
        import main

        ctx = _ctx()
        calls: list[str] = []

        async def tick(c: TradingContext) -> None:
            calls.append(c.name)
            if len(calls) == 1:
                raise RuntimeError("feed down")

        with self.assertLogs("main", level="ERROR"):
            asyncio.run(main.decision_loop(ctx, tick, interval_seconds=0, max_ticks=3))
        self.assertEqual(calls, ["paper", "paper", "paper"])
        self.assertEqual(ctx.telemetry.tick_errors, 1)


if __name__ == "__main__":
    unittest.main()
