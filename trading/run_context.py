"""Per-run mutable state.

Everything a trading loop accumulates between ticks hangs off one
``TradingContext`` so a paper run and a live run in the same process never
see each other's counters or hysteresis.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

import config
from trading.rebalance_hysteresis import HysteresisBook
from trading.stuck_target_watchdog import StuckTargetSettings, StuckTargetTracker


@dataclass
class RunTelemetry:
    ticks: int = 0
    tick_errors: int = 0
    ramp_reduced: int = 0
    sells_allowed: int = 0
    sells_gated: int = 0
    buys_blocked: int = 0
    sellability_passed: int = 0
    sellability_failed: int = 0
    watchdog_sweeps: int = 0
    watchdog_overlaps: int = 0
    watchdog_errors: int = 0
    watchdog_reset: int = 0
    watchdog_skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class TradingContext:
    name: str = "paper"
    hysteresis: HysteresisBook = field(default_factory=HysteresisBook)
    stuck_targets: StuckTargetTracker = field(default_factory=StuckTargetTracker)
    telemetry: RunTelemetry = field(default_factory=RunTelemetry)
    watchdog_running: bool = False

    @classmethod
    def from_config(cls, name: str | None = None) -> "TradingContext":
        return cls(
            name=name or str(getattr(config, "RUN_MODE", "paper") or "paper"),
            stuck_targets=StuckTargetTracker(StuckTargetSettings.from_config()),
        )

    def reset(self) -> None:
        self.hysteresis.clear_all_target_states()
        self.stuck_targets.clear()
        self.telemetry = RunTelemetry()
        self.watchdog_running = False
