"""Application configuration."""

import os
from pathlib import Path

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "y", "on")


BOT_INSTANCE_ID = os.getenv("BOT_INSTANCE_ID", "").strip()
RUN_TAG = os.getenv("RUN_TAG", BOT_INSTANCE_ID).strip()
RUN_MODE = os.getenv("RUN_MODE", "paper").strip().lower()
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///scout_queue.db")

TICK_INTERVAL_SECONDS = max(1, int(os.getenv("TICK_INTERVAL_SECONDS", "60")))

# Signal engine
MIN_TICKS_FOR_SIGNALS = max(0, int(os.getenv("MIN_TICKS_FOR_SIGNALS", "60")))
STRATEGY_TREND_THRESHOLD = max(0.0, float(os.getenv("STRATEGY_TREND_THRESHOLD", "0.75")))
STRATEGY_MOMENTUM_FACTOR = max(0.0, float(os.getenv("STRATEGY_MOMENTUM_FACTOR", "0.25")))
STRATEGY_BAND = max(0.0, float(os.getenv("STRATEGY_BAND", "0.05")))

# Allocation ramp - keeps low-history tokens from getting a full-size target.
ALLOCATION_RAMP_ENABLED = _env_bool("ALLOCATION_RAMP_ENABLED", "true")
MIN_TICKS_FOR_FULL_ALLOC = max(0, int(os.getenv("MIN_TICKS_FOR_FULL_ALLOC", "30")))
PRE_FULL_ALLOC_MAX_PCT = max(0.0, float(os.getenv("PRE_FULL_ALLOC_MAX_PCT", "0.08")))
SMOOTH_RAMP = _env_bool("SMOOTH_RAMP", "true")
HARD_CAP_BEFORE_FULL = _env_bool("HARD_CAP_BEFORE_FULL", "true")
MAX_POSITION_PCT_PER_ASSET = max(0.0, float(os.getenv("MAX_POSITION_PCT_PER_ASSET", "0.35")))
RAMP_LOG_MIN_REDUCTION_PCT = max(0.0, float(os.getenv("RAMP_LOG_MIN_REDUCTION_PCT", "0.01")))

# Rebalance sell hysteresis
REBALANCE_SELL_MIN_HOLD_MINUTES = max(0.0, float(os.getenv("REBALANCE_SELL_MIN_HOLD_MINUTES", "15")))
REBALANCE_SELL_TARGET_DROP_CONFIRM_TICKS = max(0, int(os.getenv("REBALANCE_SELL_TARGET_DROP_CONFIRM_TICKS", "3")))
REBALANCE_SELL_MIN_TRIM_USD = max(0.0, float(os.getenv("REBALANCE_SELL_MIN_TRIM_USD", "20")))

# Pre-buy sellability (honeypot) check
PREBUY_ROUNDTRIP_MIN_RATIO = max(0.0, float(os.getenv("PREBUY_ROUNDTRIP_MIN_RATIO", "0.92")))
PREBUY_MAX_SELL_IMPACT_PCT = max(0.0, float(os.getenv("PREBUY_MAX_SELL_IMPACT_PCT", "0.03")))
PREBUY_SELL_AMOUNT_FRACTION = min(1.0, max(0.01, float(os.getenv("PREBUY_SELL_AMOUNT_FRACTION", "0.90"))))
PREBUY_SELL_SLIPPAGE_MULT = max(1.0, float(os.getenv("PREBUY_SELL_SLIPPAGE_MULT", "2.0")))
MAX_SLIPPAGE_BPS = max(1, int(os.getenv("MAX_SLIPPAGE_BPS", "100")))

# Scout queue stale-claim watchdog
SCOUT_QUEUE_STALE_MINUTES = max(1.0, float(os.getenv("SCOUT_QUEUE_STALE_MINUTES", "5")))
SCOUT_QUEUE_MAX_BUY_ATTEMPTS = max(1, int(os.getenv("SCOUT_QUEUE_MAX_BUY_ATTEMPTS", "3")))
SCOUT_QUEUE_BASE_BACKOFF_MINUTES = max(0.0, float(os.getenv("SCOUT_QUEUE_BASE_BACKOFF_MINUTES", "2")))
SCOUT_QUEUE_WATCHDOG_INTERVAL_SECONDS = max(5, int(os.getenv("SCOUT_QUEUE_WATCHDOG_INTERVAL_SECONDS", "60")))

# Stuck allocation target watchdog
ALLOCATION_STUCK_WATCHDOG_ENABLED = _env_bool("ALLOCATION_STUCK_WATCHDOG_ENABLED", "false")
ALLOCATION_STUCK_MAX_ATTEMPTS = max(1, int(os.getenv("ALLOCATION_STUCK_MAX_ATTEMPTS", "3")))
ALLOCATION_STUCK_BACKOFF_MINUTES_BASE = max(0.0, float(os.getenv("ALLOCATION_STUCK_BACKOFF_MINUTES_BASE", "5")))

# Quote provider
NATIVE_MINT = os.getenv("NATIVE_MINT", "So11111111111111111111111111111111111111112").strip()
JUPITER_QUOTE_URL = os.getenv("JUPITER_QUOTE_URL", "https://lite-api.jup.ag/swap/v1/quote").strip()
JUP_API_KEY = os.getenv("JUP_API_KEY", "").strip()

HTTP_TIMEOUT_SECONDS = max(1.0, float(os.getenv("HTTP_TIMEOUT_SECONDS", "15")))
HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "8")))
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "3")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.50")))
HTTP_BACKOFF_MAX_SECONDS = max(0.10, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "8.00")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.25")))
HTTP_RATE_LIMIT_DELAY_SECONDS = max(0.0, float(os.getenv("HTTP_RATE_LIMIT_DELAY_SECONDS", "2.00")))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
DECISION_LOG_ENABLED = _env_bool("DECISION_LOG_ENABLED", "true")
DECISION_LOG_FILE = os.getenv("DECISION_LOG_FILE", os.path.join(LOG_DIR, "decisions.jsonl"))
