from __future__ import annotations

import unittest

import config
from trading.stuck_target_watchdog import (
    OUTCOME_CONFIRMED,
    OUTCOME_FAILED,
    OUTCOME_SKIPPED,
    OUTCOME_SUBMITTED,
    REASON_STUCK_BACKOFF,
    StuckTargetSettings,
    StuckTargetTracker,
)

NOW = 1_700_000_000.0


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


class StuckTargetTrackerTests(ConfigPatchMixin, unittest.TestCase):
    def _tracker(self) -> StuckTargetTracker:
        return StuckTargetTracker(StuckTargetSettings(enabled=True, max_attempts=3, backoff_minutes_base=5.0))

    def test_blocks_after_max_consecutive_failures(self) -> None:
        tracker = self._tracker()
        tracker.record_outcome("A", OUTCOME_SKIPPED, now_ts=NOW)
        tracker.record_outcome("A", OUTCOME_FAILED, now_ts=NOW)
        self.assertFalse(tracker.check("A", now_ts=NOW).blocked)

        tracker.record_outcome("A", OUTCOME_FAILED, now_ts=NOW)
        check = tracker.check("A", now_ts=NOW)
        self.assertTrue(check.blocked)
        self.assertEqual(check.reason, REASON_STUCK_BACKOFF)
        self.assertEqual(check.backoff_minutes_remaining, 5)
        self.assertFalse(tracker.check("A", now_ts=NOW + 5 * 60 + 1).blocked)

    def test_backoff_doubles_per_extra_failure(self) -> None:
        tracker = self._tracker()
        for _ in range(4):
            tracker.record_outcome("A", OUTCOME_FAILED, now_ts=NOW)
        self.assertEqual(tracker.check("A", now_ts=NOW).backoff_minutes_remaining, 10)
        tracker.record_outcome("A", OUTCOME_FAILED, now_ts=NOW)
        self.assertEqual(tracker.check("A", now_ts=NOW).backoff_minutes_remaining, 20)

    def test_success_clears_state(self) -> None:
        tracker = self._tracker()
        for _ in range(3):
            tracker.record_outcome("A", OUTCOME_FAILED, now_ts=NOW)
        for outcome in (OUTCOME_SUBMITTED, OUTCOME_CONFIRMED):
            tracker.record_outcome("A", outcome, now_ts=NOW)
            self.assertIsNone(tracker.get("A"))
            self.assertFalse(tracker.check("A", now_ts=NOW).blocked)

    def test_disabled_tracker_never_blocks(self) -> None:
        tracker = StuckTargetTracker(StuckTargetSettings(enabled=False, max_attempts=1))
        for _ in range(5):
            self.assertIsNone(tracker.record_outcome("A", OUTCOME_FAILED, now_ts=NOW))
        self.assertFalse(tracker.check("A", now_ts=NOW).blocked)

    def test_summary_and_clear(self) -> None:
        tracker = self._tracker()
        for mint in ("A", "B"):
            for _ in range(3):
                tracker.record_outcome(mint, OUTCOME_FAILED, now_ts=NOW)
        tracker.record_outcome("C", OUTCOME_FAILED, now_ts=NOW)
        summary = tracker.summary(now_ts=NOW)
        self.assertEqual(summary["total_blocked"], 2)
        self.assertEqual({row["mint"] for row in summary["blocked_mints"]}, {"A", "B"})

        tracker.clear("A")
        self.assertEqual(tracker.summary(now_ts=NOW)["total_blocked"], 1)
        tracker.clear()
        self.assertEqual(tracker.summary(now_ts=NOW)["total_blocked"], 0)
        self.assertIsNone(tracker.get("C"))

    def test_settings_from_config(self) -> None:
        self.patch_cfg(
            ALLOCATION_STUCK_WATCHDOG_ENABLED=True,
            ALLOCATION_STUCK_MAX_ATTEMPTS=2,
            ALLOCATION_STUCK_BACKOFF_MINUTES_BASE=1.5,
        )
        settings = StuckTargetSettings.from_config()
        self.assertTrue(settings.enabled)
        self.assertEqual(settings.max_attempts, 2)
        self.assertEqual(settings.backoff_minutes_base, 1.5)


if __name__ == "__main__":
    unittest.main()
