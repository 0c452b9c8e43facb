"""Swap quote provider (Jupiter-compatible quote API)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import config
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)


class QuoteError(RuntimeError):
    """Raised when the provider cannot produce a quote (HTTP failure, bad payload)."""


@dataclass
class QuoteResponse:
    out_amount: str
    price_impact_pct: str
    in_amount: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "QuoteResponse":
        return cls(
            out_amount=str(payload.get("outAmount") or ""),
            price_impact_pct=str(payload.get("priceImpactPct") or "0"),
            in_amount=str(payload.get("inAmount") or ""),
            raw=dict(payload),
        )


# Error codes the provider returns with HTTP 400 when no swap route exists.
NO_ROUTE_ERROR_CODES = frozenset({"COULD_NOT_FIND_ANY_ROUTE", "NO_ROUTES_FOUND", "TOKEN_NOT_TRADABLE"})


def _no_route_code(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    code = str(data.get("errorCode") or "").strip().upper()
    return code if code in NO_ROUTE_ERROR_CODES else None


class QuoteProvider(Protocol):
    async def quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: str,
        slippage_bps: int,
    ) -> QuoteResponse: ...


class JupiterQuoteClient:
    def __init__(self, http: ResilientHttpClient | None = None, base_url: str | None = None) -> None:
        self._http = http or ResilientHttpClient(
            headers={"Accept": "application/json"},
            source_limits={"jupiter": 4},
        )
        self._url = base_url or str(getattr(config, "JUPITER_QUOTE_URL", ""))

    async def close(self) -> None:
        await self._http.close()

    def runtime_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        return self._http.snapshot_stats(reset=reset)

    async def quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: str,
        slippage_bps: int,
    ) -> QuoteResponse:
        if not self._url:
            raise QuoteError("JUPITER_QUOTE_URL is empty")
        headers: dict[str, str] = {}
        api_key = str(getattr(config, "JUP_API_KEY", "") or "")
        if api_key:
            headers["x-api-key"] = api_key
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(int(slippage_bps)),
            "swapMode": "ExactIn",
        }
        result = await self._http.get_json(
            self._url,
            source="jupiter",
            params=params,
            headers=headers,
        )
        if not result.ok and result.status == 400:
            code = _no_route_code(result.data)
            if code:
                logger.debug("QUOTE_NO_ROUTE input=%s output=%s amount=%s code=%s", input_mint, output_mint, amount, code)
                return QuoteResponse(out_amount="0", price_impact_pct="0", raw=dict(result.data))
        if not result.ok:
            raise QuoteError(f"quote failed status={result.status} err={result.error}")
        if not isinstance(result.data, dict):
            raise QuoteError("quote payload is not an object")
        return QuoteResponse.from_payload(result.data)
