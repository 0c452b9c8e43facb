"""Per-asset backoff for allocation targets whose buys keep failing."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass

import config

logger = logging.getLogger(__name__)

OUTCOME_SKIPPED = "SKIPPED"
OUTCOME_FAILED = "FAILED"
OUTCOME_SUBMITTED = "SUBMITTED"
OUTCOME_CONFIRMED = "CONFIRMED"

FAILURE_OUTCOMES = (OUTCOME_SKIPPED, OUTCOME_FAILED)
SUCCESS_OUTCOMES = (OUTCOME_SUBMITTED, OUTCOME_CONFIRMED)

REASON_STUCK_BACKOFF = "STUCK_BACKOFF"


@dataclass(frozen=True)
class StuckTargetSettings:
    enabled: bool = False
    max_attempts: int = 3
    backoff_minutes_base: float = 5.0

    @classmethod
    def from_config(cls) -> "StuckTargetSettings":
        return cls(
            enabled=bool(getattr(config, "ALLOCATION_STUCK_WATCHDOG_ENABLED", False)),
            max_attempts=int(getattr(config, "ALLOCATION_STUCK_MAX_ATTEMPTS", 3)),
            backoff_minutes_base=float(getattr(config, "ALLOCATION_STUCK_BACKOFF_MINUTES_BASE", 5.0)),
        )


@dataclass
class StuckState:
    consecutive_failures: int = 0
    last_attempt_at: float = 0.0
    backoff_until: float = 0.0
    last_reason: str = ""


@dataclass(frozen=True)
class StuckCheckResult:
    blocked: bool
    reason: str | None = None
    backoff_minutes_remaining: int = 0


def _minutes_remaining(until_ts: float, now_ts: float) -> int:
    return int(math.ceil((until_ts - now_ts) / 60.0))


class StuckTargetTracker:
    def __init__(self, settings: StuckTargetSettings | None = None) -> None:
        self.settings = settings or StuckTargetSettings.from_config()
        self._states: dict[str, StuckState] = {}

    def check(self, mint: str, *, now_ts: float | None = None) -> StuckCheckResult:
        if not self.settings.enabled:
            return StuckCheckResult(blocked=False)
        state = self._states.get(mint)
        if state is None:
            return StuckCheckResult(blocked=False)
        now = time.time() if now_ts is None else now_ts
        if state.backoff_until > now:
            return StuckCheckResult(
                blocked=True,
                reason=REASON_STUCK_BACKOFF,
                backoff_minutes_remaining=_minutes_remaining(state.backoff_until, now),
            )
        return StuckCheckResult(blocked=False)

    def record_outcome(self, mint: str, outcome: str, *, now_ts: float | None = None) -> StuckState | None:
        if not self.settings.enabled:
            return None
        outcome = str(outcome or "").upper()
        now = time.time() if now_ts is None else now_ts

        if outcome in SUCCESS_OUTCOMES:
            previous = self._states.pop(mint, None)
            if previous is not None:
                logger.debug(
                    "STUCK_WATCHDOG reset mint=%s previous_failures=%s",
                    mint,
                    previous.consecutive_failures,
                )
            return None
        if outcome not in FAILURE_OUTCOMES:
            logger.warning("STUCK_WATCHDOG unknown_outcome mint=%s outcome=%s", mint, outcome)
            return self._states.get(mint)

        state = self._states.setdefault(mint, StuckState())
        state.consecutive_failures += 1
        state.last_attempt_at = now
        state.last_reason = outcome
        if state.consecutive_failures >= self.settings.max_attempts:
            exponent = state.consecutive_failures - self.settings.max_attempts
            backoff_minutes = self.settings.backoff_minutes_base * (2**exponent)
            state.backoff_until = now + backoff_minutes * 60.0
            logger.warning(
                "ALLOCATION_STUCK_WARNING mint=%s failures=%s last_reason=%s backoff_min=%s",
                mint,
                state.consecutive_failures,
                state.last_reason,
                backoff_minutes,
            )
        return state

    def get(self, mint: str) -> StuckState | None:
        return self._states.get(mint)

    def clear(self, mint: str | None = None) -> None:
        if mint:
            self._states.pop(mint, None)
        else:
            self._states.clear()

    def summary(self, *, now_ts: float | None = None) -> dict:
        now = time.time() if now_ts is None else now_ts
        blocked = [
            {
                "mint": mint,
                "failures": state.consecutive_failures,
                "backoff_minutes_remaining": _minutes_remaining(state.backoff_until, now),
            }
            for mint, state in self._states.items()
            if state.backoff_until > now
        ]
        return {"total_blocked": len(blocked), "blocked_mints": blocked}
