"""
Swap Orchestrator.

Converts harvested fee tokens into the reward asset in two hops through the
swap-routing service:

    hop 1: fee token    -> intermediate asset
    hop 2: intermediate -> reward asset

Every hop is quoted first; quotes breaching the slippage or price-impact
ceilings are rejected before anything is submitted. Quote requests are retried
with exponential backoff, submission goes through the Execution Core with the
SWAP label. Nothing is rolled back when hop 2 fails: the intermediate asset
stays in the operating wallet and the next cycle picks it up.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Tuple

from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from fee_distributor.domain.errors import (
    DistributionError,
    PriceImpactExceeded,
    QuoteUnavailable,
    SlippageExceeded,
    SwapHopFailed,
)
from fee_distributor.domain.models import RetryPolicy, SwapQuote, SwapResult
from fee_distributor.pipeline.abstract import LedgerClient, SwapRouter
from fee_distributor.pipeline.execution import ExecutionCore, SleepFn
from fee_distributor.utils.logging import get_logger

log = get_logger(__name__)

NATIVE_MINT = "So11111111111111111111111111111111111111112"


class SwapConfig(BaseModel):
    fee_mint: str
    intermediate_mint: str = NATIVE_MINT
    reward_mint: str
    slippage_bps: int = Field(50, ge=0, le=10_000)
    max_slippage_bps: int = Field(100, ge=0, le=10_000)
    max_price_impact_pct: float = Field(5.0, ge=0)
    native_mint: str = NATIVE_MINT
    intermediate_token_program: Optional[str] = None

    model_config = {"frozen": True}

    @property
    def intermediate_is_native(self) -> bool:
        return self.intermediate_mint == self.native_mint


class SwapOrchestrator:
    """
    Parameters
    ----------
    router : SwapRouter
        Quote and swap-transaction source.
    core : ExecutionCore
        Executes the serialized swap transactions.
    ledger : LedgerClient
        Wraps serialized swaps into operations and reads idle balances.
    config : SwapConfig
        Mints and slippage ceilings.
    policy : RetryPolicy
        Attempt budget for quote requests.
    sleep : callable
        Awaitable sleep used between quote attempts.
    """

    def __init__(
        self,
        router: SwapRouter,
        core: ExecutionCore,
        ledger: LedgerClient,
        config: SwapConfig,
        policy: RetryPolicy,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._router = router
        self._core = core
        self._ledger = ledger
        self._config = config
        self._policy = policy
        self._sleep = sleep

    @property
    def config(self) -> SwapConfig:
        return self._config

    def _check_quote(self, quote: SwapQuote) -> SwapQuote:
        if quote.price_impact_pct > self._config.max_price_impact_pct:
            raise PriceImpactExceeded(
                f"price impact {quote.price_impact_pct:.4f}% exceeds "
                f"{self._config.max_price_impact_pct:.4f}%",
                price_impact_pct=quote.price_impact_pct,
            )
        if quote.slippage_bps > self._config.max_slippage_bps:
            raise SlippageExceeded(
                f"quote slippage {quote.slippage_bps} bps exceeds {self._config.max_slippage_bps} bps",
                slippage_bps=quote.slippage_bps,
            )
        if quote.min_out_amount == 0:
            raise QuoteUnavailable(
                f"quote for {quote.in_amount} {quote.input_mint} guarantees no output"
            )
        return quote

    async def quote(self, input_mint: str, output_mint: str, amount: int) -> SwapQuote:
        """Fetch and vet a quote, retrying transient rejections."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._policy.max_retries),
            wait=wait_exponential(
                multiplier=self._policy.base_delay,
                exp_base=self._policy.backoff_factor,
                min=0,
            ),
            retry=retry_if_exception_type((QuoteUnavailable, SlippageExceeded)),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    log.warning(
                        f"[SWAP QUOTE] retry {attempt.retry_state.attempt_number}"
                        f"/{self._policy.max_retries}",
                        extra={"input_mint": input_mint, "output_mint": output_mint},
                    )
                raw = await self._router.get_quote(
                    input_mint, output_mint, amount, self._config.slippage_bps
                )
                return self._check_quote(raw)
        raise QuoteUnavailable(f"no quote for {input_mint} -> {output_mint}")  # pragma: no cover

    async def swap_hop(
        self,
        hop: int,
        input_mint: str,
        output_mint: str,
        amount: int,
        payer: str,
    ) -> SwapResult:
        try:
            quote = await self.quote(input_mint, output_mint, amount)
            log.info(
                f"[SWAP HOP {hop}] route {' -> '.join(quote.route_labels) or 'direct'}",
                extra={
                    "hop": hop,
                    "input_mint": input_mint,
                    "output_mint": output_mint,
                    "in_amount": quote.in_amount,
                    "expected_out": quote.out_amount,
                    "min_out": quote.min_out_amount,
                    "price_impact_pct": quote.price_impact_pct,
                    "markets": list(quote.route_labels),
                },
            )
            payload = await self._router.get_swap_transaction(quote, payer)
            operation = self._ledger.from_serialized(
                payload, payer, description=f"swap hop {hop}: {input_mint} -> {output_mint}"
            )
            result = await self._core.execute(operation, "SWAP")
        except DistributionError as exc:
            log.error(f"[SWAP HOP {hop}] failed: {exc}", extra={"hop": hop, "error_type": type(exc).__name__})
            raise SwapHopFailed(hop, exc) from exc

        return SwapResult(
            hop=hop,
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=quote.in_amount,
            quoted_out_amount=quote.out_amount,
            min_out_amount=quote.min_out_amount,
            price_impact_pct=quote.price_impact_pct,
            route_labels=quote.route_labels,
            signature=result.signature,
            attempts=result.attempts,
        )

    async def convert(self, amount: int, payer: str) -> Tuple[SwapResult, SwapResult]:
        """
        Run both hops for `amount` of the fee token held by `payer`.

        Hop 2 spends hop 1's guaranteed minimum output when the intermediate
        asset is the native currency; otherwise the payer's whole intermediate
        token balance, which also sweeps up leftovers of earlier partial swaps.
        """
        cfg = self._config
        first = await self.swap_hop(1, cfg.fee_mint, cfg.intermediate_mint, amount, payer)

        if cfg.intermediate_is_native:
            hop2_amount = first.min_out_amount
        else:
            hop2_amount = await self._ledger.get_token_balance(
                payer, cfg.intermediate_mint, cfg.intermediate_token_program
            )
        if hop2_amount <= 0:
            raise SwapHopFailed(2, QuoteUnavailable("no intermediate balance to swap"))

        second = await self.swap_hop(2, cfg.intermediate_mint, cfg.reward_mint, hop2_amount, payer)
        return first, second


__all__ = ["NATIVE_MINT", "SwapConfig", "SwapOrchestrator"]
