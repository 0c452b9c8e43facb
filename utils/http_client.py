"""Async JSON GET for quote providers.

Only transport errors, 429 and 5xx are retried. Any other status is final, and
its body is handed back (decoded when it is JSON) so the caller can read the
provider's error code.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)


def is_retryable_status(status: int) -> bool:
    return status == 429 or 500 <= status <= 599


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_seconds: float = 0.5
    max_seconds: float = 8.0
    jitter_seconds: float = 0.25
    rate_limit_extra_seconds: float = 2.0

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        base = max(0.05, float(getattr(config, "HTTP_BACKOFF_BASE_SECONDS", 0.5)))
        return cls(
            attempts=max(1, int(getattr(config, "HTTP_RETRY_ATTEMPTS", 3))),
            base_seconds=base,
            max_seconds=max(base, float(getattr(config, "HTTP_BACKOFF_MAX_SECONDS", 8.0))),
            jitter_seconds=max(0.0, float(getattr(config, "HTTP_JITTER_SECONDS", 0.25))),
            rate_limit_extra_seconds=max(0.0, float(getattr(config, "HTTP_RATE_LIMIT_DELAY_SECONDS", 2.0))),
        )

    def delay(self, attempt: int, status: int = 0, jitter: float | None = None) -> float:
        """Sleep before retry number ``attempt`` (1-based). A 429 adds the rate-limit penalty, still under the cap."""
        step = min(self.max_seconds, self.base_seconds * (2 ** max(0, attempt - 1)))
        if status == 429:
            step = min(self.max_seconds, step + self.rate_limit_extra_seconds)
        if jitter is None:
            jitter = random.uniform(0.0, self.jitter_seconds)
        return max(0.0, step + jitter)


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""
    attempts: int = 1

    @property
    def client_error(self) -> bool:
        return 400 <= self.status <= 499 and self.status != 429


@dataclass
class SourceStats:
    ok: int = 0
    fail: int = 0
    retries: int = 0
    rate_limited: int = 0
    latencies_ms: list[float] = field(default_factory=list)

    def as_dict(self) -> dict[str, int | float]:
        total = self.ok + self.fail
        return {
            "ok": self.ok,
            "fail": self.fail,
            "total": total,
            "retries": self.retries,
            "rate_limited": self.rate_limited,
            "error_percent": round(self.fail * 100.0 / total, 2) if total else 0.0,
            "latency_avg_ms": round(sum(self.latencies_ms) / len(self.latencies_ms), 2) if self.latencies_ms else 0.0,
            "latency_max_ms": round(max(self.latencies_ms), 2) if self.latencies_ms else 0.0,
        }


def _decode_body(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return text


class ResilientHttpClient:
    def __init__(
        self,
        timeout_seconds: float | None = None,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        if timeout_seconds is None:
            timeout_seconds = float(getattr(config, "HTTP_TIMEOUT_SECONDS", 15.0))
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = dict(source_limits or {})
        self.policy = policy or RetryPolicy.from_config()
        self._session: aiohttp.ClientSession | None = None
        self._limits: dict[str, asyncio.Semaphore] = {}
        self._stats: dict[str, SourceStats] = {}

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _session_for_request(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            limit = max(1, int(getattr(config, "HTTP_CONNECTOR_LIMIT", 30)))
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                connector=aiohttp.TCPConnector(limit=limit),
                headers=self._headers,
            )
        return self._session

    def _limit_for(self, source: str) -> asyncio.Semaphore:
        if source not in self._limits:
            default = max(1, int(getattr(config, "HTTP_DEFAULT_CONCURRENCY", 8)))
            self._limits[source] = asyncio.Semaphore(max(1, int(self._source_limits.get(source, default))))
        return self._limits[source]

    def snapshot_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        out = {source: row.as_dict() for source, row in self._stats.items()}
        if reset:
            self._stats = {}
        return out

    async def _fetch_once(
        self,
        url: str,
        params: dict[str, Any] | None,
        headers: dict[str, str] | None,
        stats: SourceStats,
    ) -> tuple[int, Any, str]:
        started = time.perf_counter()
        session = self._session_for_request()
        try:
            async with session.get(url, params=params, headers=headers) as response:
                status = int(response.status)
                text = await response.text()
        finally:
            stats.latencies_ms.append((time.perf_counter() - started) * 1000.0)
        if status == 200:
            return status, json.loads(text), ""
        return status, _decode_body(text), f"http_status_{status}:{text[:200]}"

    async def get_json(
        self,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        source = str(source or "default").strip().lower() or "default"
        attempts = max(1, int(max_attempts or self.policy.attempts))
        stats = self._stats.setdefault(source, SourceStats())

        for attempt in range(1, attempts + 1):
            status = 0
            try:
                async with self._limit_for(source):
                    status, data, error = await self._fetch_once(url, params, headers, stats)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                data, error = None, f"http_error:{exc}"
            except ValueError as exc:
                # 200 with a non-JSON body is final.
                stats.fail += 1
                return HttpResult(ok=False, status=200, data=None, error=f"bad_json:{exc}", attempts=attempt)

            if status == 200:
                stats.ok += 1
                return HttpResult(ok=True, status=status, data=data, attempts=attempt)
            if status == 429:
                stats.rate_limited += 1
            if (status and not is_retryable_status(status)) or attempt >= attempts:
                stats.fail += 1
                return HttpResult(ok=False, status=status, data=data, error=error, attempts=attempt)

            stats.retries += 1
            delay = self.policy.delay(attempt, status)
            logger.debug(
                "HTTP_RETRY source=%s attempt=%s/%s status=%s delay=%.2fs url=%s",
                source,
                attempt,
                attempts,
                status,
                delay,
                url,
            )
            await asyncio.sleep(delay)

        return HttpResult(ok=False, status=0, data=None, error="http_exhausted", attempts=attempts)
