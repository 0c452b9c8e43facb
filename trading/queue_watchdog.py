"""Stale-claim watchdog for the scout buy queue.

A row left in BUYING past ``stale_minutes`` means the process that claimed it
crashed or hung mid-purchase. Each sweep either puts the row back to PENDING
with exponential backoff or retires it as SKIPPED once it has used up its
attempts. A sweep that finds nothing stale issues no writes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import config
from database import db
from database.models import utcnow
from trading.run_context import TradingContext

logger = logging.getLogger(__name__)

ANNOTATION_RESET = "STALE_CLAIM_RESET"
ANNOTATION_MAX_RETRIES = "STALE_CLAIM_MAX_RETRIES"


@dataclass(frozen=True)
class WatchdogSettings:
    stale_minutes: float = 5.0
    max_buy_attempts: int = 3
    base_backoff_minutes: float = 2.0

    @classmethod
    def from_config(cls) -> "WatchdogSettings":
        return cls(
            stale_minutes=float(getattr(config, "SCOUT_QUEUE_STALE_MINUTES", 5.0)),
            max_buy_attempts=int(getattr(config, "SCOUT_QUEUE_MAX_BUY_ATTEMPTS", 3)),
            base_backoff_minutes=float(getattr(config, "SCOUT_QUEUE_BASE_BACKOFF_MINUTES", 2.0)),
        )


@dataclass
class WatchdogResult:
    reset_to_pending: int = 0
    marked_skipped: int = 0
    reset_mints: list[str] = field(default_factory=list)
    skipped_mints: list[str] = field(default_factory=list)
    raced_mints: list[str] = field(default_factory=list)

    @property
    def touched(self) -> int:
        return self.reset_to_pending + self.marked_skipped


def backoff_minutes(previous_attempts: int, base_backoff_minutes: float) -> float:
    """attempt 0 -> x1, attempt 1 -> x2, attempt 2 -> x4."""
    return base_backoff_minutes * (2 ** max(0, int(previous_attempts)))


def reset_stale_buying_claims(
    settings: WatchdogSettings,
    *,
    now: datetime | None = None,
    session_factory: db.SessionFactory | None = None,
) -> WatchdogResult:
    """Synchronous sweep. Queue read/write errors propagate to the caller."""
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.stale_minutes)
    stale = db.select_stale_buying(cutoff, session_factory=session_factory)
    result = WatchdogResult()
    if not stale:
        return result

    seen: set[str] = set()
    for claim in stale:
        if claim.mint in seen:
            continue
        seen.add(claim.mint)
        age_minutes = int(round((now - claim.in_progress_at).total_seconds() / 60.0))

        if claim.buy_attempts >= settings.max_buy_attempts:
            note = (
                f"{ANNOTATION_MAX_RETRIES}: {claim.buy_attempts}/{settings.max_buy_attempts} attempts used, "
                f"stale for {age_minutes}min"
            )
            if not db.mark_claim_skipped(claim, note, now=now, session_factory=session_factory):
                result.raced_mints.append(claim.mint)
                logger.info("WATCHDOG raced mint=%s action=skip", claim.mint)
                continue
            result.skipped_mints.append(claim.mint)
            logger.warning(
                "WATCHDOG marked_skipped mint=%s symbol=%s attempts=%s max=%s age_min=%s",
                claim.mint,
                claim.symbol,
                claim.buy_attempts,
                settings.max_buy_attempts,
                age_minutes,
            )
            continue

        delay = backoff_minutes(claim.buy_attempts, settings.base_backoff_minutes)
        next_attempt_at = now + timedelta(minutes=delay)
        note = (
            f"{ANNOTATION_RESET}: stale for {age_minutes}min, "
            f"attempt {claim.buy_attempts + 1}/{settings.max_buy_attempts}"
        )
        if not db.reset_claim_to_pending(claim, next_attempt_at, note, now=now, session_factory=session_factory):
            result.raced_mints.append(claim.mint)
            logger.info("WATCHDOG raced mint=%s action=reset", claim.mint)
            continue
        result.reset_mints.append(claim.mint)
        logger.info(
            "WATCHDOG reset_to_pending mint=%s symbol=%s attempts=%s max=%s age_min=%s backoff_min=%s next_attempt_at=%s",
            claim.mint,
            claim.symbol,
            claim.buy_attempts + 1,
            settings.max_buy_attempts,
            age_minutes,
            delay,
            next_attempt_at.isoformat(),
        )

    result.reset_to_pending = len(result.reset_mints)
    result.marked_skipped = len(result.skipped_mints)
    if result.touched or result.raced_mints:
        logger.info(
            "WATCHDOG sweep_done reset=%s skipped=%s raced=%s scanned=%s stale_min=%s max_attempts=%s",
            result.reset_to_pending,
            result.marked_skipped,
            len(result.raced_mints),
            len(stale),
            settings.stale_minutes,
            settings.max_buy_attempts,
        )
    return result


async def run_watchdog_sweep(
    ctx: TradingContext,
    settings: WatchdogSettings | None = None,
    *,
    session_factory: db.SessionFactory | None = None,
) -> WatchdogResult | None:
    """Run one sweep off the event loop; returns None if a sweep is already running for this context."""
    if ctx.watchdog_running:
        ctx.telemetry.watchdog_overlaps += 1
        logger.info("WATCHDOG skip reason=sweep_in_progress context=%s", ctx.name)
        return None
    ctx.watchdog_running = True
    try:
        result = await asyncio.to_thread(
            reset_stale_buying_claims,
            settings or WatchdogSettings.from_config(),
            session_factory=session_factory,
        )
    finally:
        ctx.watchdog_running = False
    ctx.telemetry.watchdog_sweeps += 1
    ctx.telemetry.watchdog_reset += result.reset_to_pending
    ctx.telemetry.watchdog_skipped += result.marked_skipped
    return result
