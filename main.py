"""Entry point for the allocation core: logging, queue DB and the periodic timers."""

import argparse
import asyncio
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from database.db import init_db, queue_health
from trading.queue_watchdog import WatchdogResult, WatchdogSettings, run_watchdog_sweep
from trading.run_context import TradingContext
from utils.log_contracts import DecisionEventWriter


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)

TickFn = Callable[[TradingContext], Awaitable[object]]


def build_event_writer() -> DecisionEventWriter:
    return DecisionEventWriter(
        str(getattr(config, "DECISION_LOG_FILE", "") or ""),
        run_tag=str(getattr(config, "RUN_TAG", "") or ""),
        enabled=bool(getattr(config, "DECISION_LOG_ENABLED", True)),
    )


def record_watchdog_events(ctx: TradingContext, result: WatchdogResult, events: DecisionEventWriter) -> None:
    for decision, reason, mints in (
        ("reset_to_pending", "stale_claim_reset", result.reset_mints),
        ("mark_skipped", "stale_claim_max_retries", result.skipped_mints),
        ("leave", "raced", result.raced_mints),
    ):
        for mint in mints:
            events.queue_repair({"context": ctx.name, "decision": decision, "reason": reason, "mint": mint})


async def watchdog_once(
    ctx: TradingContext,
    settings: WatchdogSettings,
    events: DecisionEventWriter | None = None,
) -> WatchdogResult | None:
    try:
        result = await run_watchdog_sweep(ctx, settings)
    except SQLAlchemyError:
        ctx.telemetry.watchdog_errors += 1
        logger.exception("WATCHDOG sweep_failed context=%s", ctx.name)
        return None
    if result is not None and events is not None:
        record_watchdog_events(ctx, result, events)
    return result


async def watchdog_loop(
    ctx: TradingContext,
    settings: WatchdogSettings,
    events: DecisionEventWriter | None = None,
    *,
    interval_seconds: float | None = None,
) -> None:
    interval = float(
        interval_seconds
        if interval_seconds is not None
        else getattr(config, "SCOUT_QUEUE_WATCHDOG_INTERVAL_SECONDS", 60)
    )
    logger.info(
        "WATCHDOG started context=%s interval_s=%s stale_min=%s max_attempts=%s base_backoff_min=%s",
        ctx.name,
        interval,
        settings.stale_minutes,
        settings.max_buy_attempts,
        settings.base_backoff_minutes,
    )
    while True:
        await watchdog_once(ctx, settings, events)
        await asyncio.sleep(interval)


async def decision_loop(
    ctx: TradingContext,
    tick_fn: TickFn,
    *,
    interval_seconds: float | None = None,
    max_ticks: int | None = None,
) -> None:
    """Drive ``tick_fn(ctx)`` on a fixed interval; a failing tick is logged and the next one still runs."""
    interval = float(interval_seconds if interval_seconds is not None else getattr(config, "TICK_INTERVAL_SECONDS", 60))
    done = 0
    while max_ticks is None or done < max_ticks:
        try:
            await tick_fn(ctx)
        except Exception:
            ctx.telemetry.tick_errors += 1
            logger.exception("Decision tick error context=%s", ctx.name)
        done += 1
        if max_ticks is not None and done >= max_ticks:
            break
        await asyncio.sleep(interval)


async def run(once: bool = False) -> None:
    ctx = TradingContext.from_config()
    settings = WatchdogSettings.from_config()
    events = build_event_writer()
    if once:
        result = await watchdog_once(ctx, settings, events)
        logger.info(
            "WATCHDOG once context=%s result=%s queue=%s",
            ctx.name,
            result,
            queue_health(),
        )
        return
    try:
        await watchdog_loop(ctx, settings, events)
    finally:
        logger.info("Shutdown context=%s telemetry=%s", ctx.name, ctx.telemetry.as_dict())


def main() -> None:
    parser = argparse.ArgumentParser(description="Allocation core: scout queue watchdog timer")
    parser.add_argument("--once", action="store_true", help="Run a single watchdog sweep and exit")
    args = parser.parse_args()

    configure_logging()
    init_db()
    try:
        asyncio.run(run(once=args.once))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
