from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from utils import log_contracts


class LogContractsTests(unittest.TestCase):
    def test_allocation_event_adds_ids_and_reason_code(self) -> None:
        row = log_contracts.allocation_decision_event(
            {
                "ts": 1_700_000_000.0,
                "context": "paper",
                "decision_stage": "rebalance_gate",
                "decision": "sell_gated",
                "reason": "MIN_HOLD_BEFORE_REBALANCE_SELL",
                "mint": "MintAAA",
                "symbol": "AAA",
            },
            run_tag="mx_a",
        )
        self.assertTrue(str(row["trace_id"]).startswith("tr_"))
        self.assertTrue(str(row["decision_id"]).startswith("dec_"))
        self.assertEqual(row["reason_code"], "GATE_MIN_HOLD")
        self.assertEqual(row["reason_category"], "gate")
        self.assertEqual(row["schema_name"], log_contracts.SCHEMA_ALLOCATION_DECISION)
        self.assertEqual(row["run_tag"], "mx_a")
        self.assertTrue(row["timestamp"].startswith("2023-11-14"))

    def test_unknown_reason_falls_back_to_stage_prefix(self) -> None:
        code = log_contracts.reason_code_for_event(reason="liquidity gone", decision_stage="sellability")
        self.assertEqual(code, "PREBUY_LIQUIDITY_GONE")
        self.assertEqual(log_contracts.reason_code_meta(code)["category"], "unknown")
        self.assertEqual(
            log_contracts.reason_code_for_event(reason="", decision_stage="ramp", decision="hold"),
            "RAMP_HOLD",
        )
        self.assertEqual(log_contracts.reason_code_for_event(reason="", decision=""), "UNKNOWN")

    def test_sellability_reasons_map_to_precheck_codes(self) -> None:
        for reason, code in (
            ("BUY_QUOTE_ZERO", "PREBUY_BUY_QUOTE_ZERO"),
            ("SELL_QUOTE_FAILED", "PREBUY_SELL_QUOTE_FAILED"),
            ("ROUNDTRIP_RATIO_LOW", "PREBUY_ROUNDTRIP_RATIO_LOW"),
            ("CHECK_ERROR", "PREBUY_CHECK_ERROR"),
        ):
            self.assertEqual(log_contracts.reason_code_for_event(reason=reason, decision_stage="sellability"), code)
        self.assertEqual(log_contracts.reason_code_meta("PREBUY_CHECK_ERROR")["severity"], "ERROR")

    def test_queue_repair_event_defaults_to_watchdog_stage(self) -> None:
        row = log_contracts.queue_repair_event({"decision": "mark_skipped", "reason": "stale_claim_max_retries", "mint": "M"})
        self.assertEqual(row["decision_stage"], "watchdog")
        self.assertEqual(row["reason_code"], "WATCHDOG_MAX_RETRIES")
        self.assertEqual(row["reason_severity"], "WARN")

    def test_writer_appends_jsonl(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "nested" / "decisions.jsonl"
            writer = log_contracts.DecisionEventWriter(str(path), run_tag="r1")
            self.assertTrue(writer.allocation({"decision_stage": "ramp", "reason": "hard_cap", "mint": "A"}))
            self.assertTrue(writer.queue_repair({"reason": "stale_claim_reset", "mint": "B"}))
            lines = path.read_text(encoding="utf-8").splitlines()
        self.assertEqual(writer.written, 2)
        self.assertEqual([json.loads(line)["reason_code"] for line in lines], ["RAMP_HARD_CAP", "WATCHDOG_STALE_CLAIM_RESET"])

    def test_writer_failures_do_not_raise(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            writer = log_contracts.DecisionEventWriter(tmpdir)
            with self.assertLogs("utils.log_contracts", level="ERROR"):
                self.assertFalse(writer.allocation({"mint": "A"}))
        self.assertEqual(writer.errors, 1)

    def test_disabled_writer_is_noop(self) -> None:
        writer = log_contracts.DecisionEventWriter("", enabled=True)
        self.assertFalse(writer.allocation({"mint": "A"}))
        self.assertEqual(writer.written, 0)


if __name__ == "__main__":
    unittest.main()
