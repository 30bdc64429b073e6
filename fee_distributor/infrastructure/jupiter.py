"""
Jupiter swap-routing client.

`GET /quote` returns the best route for an exact-in swap; `POST /swap` turns a
quote into an unsigned, serialized versioned transaction for a given payer.
"""

from __future__ import annotations

import asyncio
import base64
from typing import Any, Dict, Optional

import aiohttp

from fee_distributor.domain.errors import QuoteUnavailable
from fee_distributor.domain.models import SwapQuote
from fee_distributor.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_JUPITER_API_URL = "https://lite-api.jup.ag/swap/v1"


def parse_quote(payload: Dict[str, Any]) -> SwapQuote:
    """
    Build a SwapQuote from a Jupiter quote response.

    Jupiter reports `priceImpactPct` as a fraction ("0.0125" is 1.25 %); the
    model stores a percentage.
    """
    try:
        labels = tuple(
            str(step.get("swapInfo", {}).get("label") or "?") for step in payload.get("routePlan") or []
        )
        return SwapQuote(
            input_mint=str(payload["inputMint"]),
            output_mint=str(payload["outputMint"]),
            in_amount=int(payload["inAmount"]),
            out_amount=int(payload["outAmount"]),
            min_out_amount=int(payload.get("otherAmountThreshold") or payload["outAmount"]),
            slippage_bps=int(payload.get("slippageBps") or 0),
            price_impact_pct=float(payload.get("priceImpactPct") or 0.0) * 100,
            route_labels=labels,
            raw=payload,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise QuoteUnavailable(f"malformed quote response: {exc}") from exc


class JupiterClient:
    """
    Parameters
    ----------
    base_url : str
        Swap API root, e.g. https://lite-api.jup.ag/swap/v1.
    request_timeout : float
        Total timeout per HTTP request, seconds.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_JUPITER_API_URL,
        request_timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "JupiterClient":
        self._ensure_session()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> SwapQuote:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
        }
        session = self._ensure_session()
        try:
            async with session.get(f"{self._base_url}/quote", params=params) as response:
                body = await response.json(content_type=None)
                if response.status >= 400:
                    raise QuoteUnavailable(
                        f"quote failed: HTTP {response.status}: {body}", status=response.status
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise QuoteUnavailable(f"quote request failed: {exc}") from exc

        if not isinstance(body, dict) or body.get("error"):
            raise QuoteUnavailable(f"no route for {input_mint} -> {output_mint}: {body}")
        return parse_quote(body)

    async def get_swap_transaction(self, quote: SwapQuote, payer: str) -> bytes:
        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": payer,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        }
        session = self._ensure_session()
        try:
            async with session.post(f"{self._base_url}/swap", json=payload) as response:
                body = await response.json(content_type=None)
                if response.status >= 400:
                    raise QuoteUnavailable(
                        f"swap build failed: HTTP {response.status}: {body}", status=response.status
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise QuoteUnavailable(f"swap request failed: {exc}") from exc

        encoded = body.get("swapTransaction") if isinstance(body, dict) else None
        if not encoded:
            raise QuoteUnavailable(f"swap response carries no transaction: {body}")
        log.debug("[JUPITER] swap transaction built", extra={"payer": payer, "bytes": len(encoded)})
        return base64.b64decode(encoded)


__all__ = ["DEFAULT_JUPITER_API_URL", "JupiterClient", "parse_quote"]
