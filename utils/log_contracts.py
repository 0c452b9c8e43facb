"""Stable log contracts for decision events written by the trading loop."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

LOG_SCHEMA_VERSION = "2026-10-01.v1"

SCHEMA_ALLOCATION_DECISION = "allocation_decision.v1"
SCHEMA_QUEUE_REPAIR = "queue_repair.v1"

_STAGE_PREFIX: dict[str, str] = {
    "signal": "SIGNAL",
    "ramp": "RAMP",
    "rebalance_gate": "GATE",
    "stuck_target": "STUCK",
    "sellability": "PREBUY",
    "plan": "PLAN",
    "watchdog": "WATCHDOG",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "insufficient_ticks": "SIGNAL_INSUFFICIENT_TICKS",
    "ramp": "RAMP_REDUCED",
    "hard_cap": "RAMP_HARD_CAP",
    "min_hold_before_rebalance_sell": "GATE_MIN_HOLD",
    "target_drop_not_persistent": "GATE_NOT_PERSISTENT",
    "trim_too_small": "GATE_TRIM_TOO_SMALL",
    "stuck_backoff": "STUCK_BACKOFF",
    "buy_quote_zero": "PREBUY_BUY_QUOTE_ZERO",
    "sell_quote_failed": "PREBUY_SELL_QUOTE_FAILED",
    "sell_quote_zero": "PREBUY_SELL_QUOTE_ZERO",
    "roundtrip_ratio_low": "PREBUY_ROUNDTRIP_RATIO_LOW",
    "sell_impact_high": "PREBUY_SELL_IMPACT_HIGH",
    "check_error": "PREBUY_CHECK_ERROR",
    "stale_claim_reset": "WATCHDOG_STALE_CLAIM_RESET",
    "stale_claim_max_retries": "WATCHDOG_MAX_RETRIES",
    "raced": "WATCHDOG_RACED",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "SIGNAL_INSUFFICIENT_TICKS": {"severity": "INFO", "category": "signal", "title": "Not enough price history"},
    "RAMP_REDUCED": {"severity": "INFO", "category": "ramp", "title": "Target scaled by tick confidence"},
    "RAMP_HARD_CAP": {"severity": "INFO", "category": "ramp", "title": "Target capped before full history"},
    "GATE_MIN_HOLD": {"severity": "INFO", "category": "gate", "title": "Position younger than minimum hold"},
    "GATE_NOT_PERSISTENT": {"severity": "INFO", "category": "gate", "title": "Target drop not yet confirmed"},
    "GATE_TRIM_TOO_SMALL": {"severity": "INFO", "category": "gate", "title": "Trim proceeds below minimum"},
    "STUCK_BACKOFF": {"severity": "WARN", "category": "stuck", "title": "Asset in failure backoff"},
    "PREBUY_BUY_QUOTE_ZERO": {"severity": "WARN", "category": "precheck", "title": "Buy quote returned zero"},
    "PREBUY_SELL_QUOTE_FAILED": {"severity": "WARN", "category": "precheck", "title": "No sell route"},
    "PREBUY_SELL_QUOTE_ZERO": {"severity": "WARN", "category": "precheck", "title": "Sell quote returned zero"},
    "PREBUY_ROUNDTRIP_RATIO_LOW": {"severity": "WARN", "category": "precheck", "title": "Round trip loses too much"},
    "PREBUY_SELL_IMPACT_HIGH": {"severity": "WARN", "category": "precheck", "title": "Sell price impact too high"},
    "PREBUY_CHECK_ERROR": {"severity": "ERROR", "category": "precheck", "title": "Sellability check errored"},
    "WATCHDOG_STALE_CLAIM_RESET": {"severity": "INFO", "category": "queue", "title": "Stale claim returned to queue"},
    "WATCHDOG_MAX_RETRIES": {"severity": "WARN", "category": "queue", "title": "Stale claim retired"},
    "WATCHDOG_RACED": {"severity": "INFO", "category": "queue", "title": "Claim changed during repair"},
}


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _as_ts(value: Any) -> float:
    if value is None or value == "":
        return datetime.now(timezone.utc).timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc).timestamp()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _iso_from_ts(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def _normalize_reason_text(value: Any) -> str:
    text = str(value or "").strip().lower()
    if not text:
        return ""
    text = re.sub(r"[^a-z0-9]+", "_", text)
    return re.sub(r"_+", "_", text).strip("_")


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    text = re.sub(r"_+", "_", text).strip("_")
    return text or "UNKNOWN"


def _stage_prefix(value: Any) -> str:
    stage = _normalize_reason_text(value) or "unknown"
    return _STAGE_PREFIX.get(stage, "UNKNOWN")


def reason_code_for_event(
    *,
    reason: Any,
    decision_stage: Any = "",
    decision: Any = "",
) -> str:
    normalized_reason = _normalize_reason_text(reason)
    if not normalized_reason:
        normalized_decision = _normalize_reason_text(decision)
        if normalized_decision:
            return f"{_stage_prefix(decision_stage)}_{_sanitize_code_token(normalized_decision)}"
        return "UNKNOWN"
    override = _REASON_CODE_OVERRIDES.get(normalized_reason)
    if override:
        return override
    return f"{_stage_prefix(decision_stage)}_{_sanitize_code_token(normalized_reason)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {
        "severity": "INFO",
        "category": "unknown",
        "title": key.replace("_", " ").title(),
    }


def _digest_seed(*parts: Any) -> str:
    seed = "|".join(str(p or "").strip() for p in parts)
    return hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()


def _trace_id(payload: dict[str, Any]) -> str:
    raw = str(payload.get("trace_id", "") or "").strip()
    if raw:
        return raw
    mint = str(payload.get("mint", "") or "").strip()
    ts = _as_ts(payload.get("ts"))
    return f"tr_{_digest_seed(mint, payload.get('context', ''), f'{ts:.6f}')[:20]}"


def _decision_id(payload: dict[str, Any], *, run_tag: str) -> str:
    raw = str(payload.get("decision_id", "") or "").strip()
    if raw:
        return raw
    return (
        "dec_"
        + _digest_seed(
            run_tag,
            payload.get("trace_id", ""),
            payload.get("decision_stage", ""),
            payload.get("decision", ""),
            payload.get("reason", ""),
            payload.get("mint", ""),
            f"{_as_ts(payload.get('ts')):.6f}",
        )[:20]
    )


def stamp_event(
    event: dict[str, Any],
    *,
    schema_name: str,
    event_type: str,
    run_tag: str = "",
) -> dict[str, Any]:
    payload = dict(event or {})
    ts = _as_ts(payload.get("ts", payload.get("timestamp")))
    payload["ts"] = float(ts)
    payload["timestamp"] = str(payload.get("timestamp", "") or _iso_from_ts(ts))
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", schema_name)
    payload.setdefault("event_type", str(event_type or "event"))
    if run_tag:
        payload.setdefault("run_tag", str(run_tag))
    payload["trace_id"] = _trace_id(payload)
    payload["decision_id"] = _decision_id(payload, run_tag=str(payload.get("run_tag", run_tag or "")))
    return payload


def _apply_reason_code(payload: dict[str, Any]) -> None:
    payload["reason"] = str(payload.get("reason", "") or "")
    payload["reason_code"] = str(
        payload.get("reason_code", "")
        or reason_code_for_event(
            reason=payload.get("reason", ""),
            decision_stage=payload.get("decision_stage", ""),
            decision=payload.get("decision", ""),
        )
    ).strip().upper()
    meta = reason_code_meta(payload["reason_code"])
    payload["reason_severity"] = str(payload.get("reason_severity", meta.get("severity", "INFO")) or "INFO")
    payload["reason_category"] = str(payload.get("reason_category", meta.get("category", "unknown")) or "unknown")


def allocation_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(
        event,
        schema_name=SCHEMA_ALLOCATION_DECISION,
        event_type=str((event or {}).get("event_type", "allocation_decision")),
        run_tag=run_tag,
    )
    payload.setdefault("context", "")
    payload.setdefault("decision_stage", "unknown")
    payload.setdefault("decision", "unknown")
    payload["mint"] = str(payload.get("mint", "") or "")
    payload["symbol"] = str(payload.get("symbol", "N/A") or "N/A")
    payload["target_pct"] = _safe_float(payload.get("target_pct", 0.0), 0.0)
    payload["current_pct"] = _safe_float(payload.get("current_pct", 0.0), 0.0)
    _apply_reason_code(payload)
    return payload


def queue_repair_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(
        event,
        schema_name=SCHEMA_QUEUE_REPAIR,
        event_type=str((event or {}).get("event_type", "queue_repair")),
        run_tag=run_tag,
    )
    payload.setdefault("context", "")
    payload["decision_stage"] = str(payload.get("decision_stage", "watchdog") or "watchdog")
    payload.setdefault("decision", "unknown")
    payload["mint"] = str(payload.get("mint", "") or "")
    _apply_reason_code(payload)
    return payload


class DecisionEventWriter:
    """Appends stamped events to a JSONL file. Write failures are logged, never raised."""

    def __init__(self, path: str, *, run_tag: str = "", enabled: bool = True) -> None:
        self.path = path
        self.run_tag = run_tag
        self.enabled = bool(enabled and path)
        self.written = 0
        self.errors = 0

    def write(self, record: dict[str, Any]) -> bool:
        if not self.enabled:
            return False
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
        except (OSError, TypeError, ValueError):
            self.errors += 1
            logger.exception("DECISION_LOG write_failed path=%s", self.path)
            return False
        self.written += 1
        return True

    def allocation(self, event: dict[str, Any]) -> bool:
        return self.write(allocation_decision_event(event, run_tag=self.run_tag))

    def queue_repair(self, event: dict[str, Any]) -> bool:
        return self.write(queue_repair_event(event, run_tag=self.run_tag))
