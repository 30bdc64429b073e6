"""
Distribution cycle orchestrator.

Runs one fee-to-reward cycle end to end, profiles it and persists the outcome.

Usage:
    from fee_distributor.orchestrator import DistributionPipeline

    pipeline = DistributionPipeline(ledger, ledger, router, operator, ...)
    cycle = await pipeline.run_distribution_cycle(token_id, fee_collector, excluded)

Outputs are saved to `results/` by default:
- `results/latest.json` (last cycle)
- `results/cycle-<timestamp>.json` (timestamped archive)
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Iterable, Optional, Tuple

from pydantic import BaseModel, Field

from fee_distributor.domain.errors import (
    BatchPartialFailure,
    DistributionError,
    InvalidOperation,
)
from fee_distributor.domain.models import (
    BalanceAction,
    DistributionCycle,
    RetryPolicy,
    utcnow,
)
from fee_distributor.pipeline.abstract import (
    LedgerClient,
    SwapRouter,
    TokenAccountEnumerator,
    TokenTransfer,
)
from fee_distributor.pipeline.balance import BalanceBand, BalanceSentinel
from fee_distributor.pipeline.disbursement import DisbursementConfig, DisbursementEngine
from fee_distributor.pipeline.execution import ExecutionCore, SleepFn
from fee_distributor.pipeline.holders import allocate, take_snapshot
from fee_distributor.pipeline.swap import SwapConfig, SwapOrchestrator
from fee_distributor.utils.logging import get_logger
from fee_distributor.utils.profiler import profile_block

log = get_logger(__name__)

BPS_DENOMINATOR = 10_000


class CycleConfig(BaseModel):
    fee_token_program: Optional[str] = None
    reward_share_bps: int = Field(5_000, ge=0, le=BPS_DENOMINATOR)
    minimum_fee_amount: int = Field(1_000_000, ge=0)
    results_dir: Path = Path("results")
    persist: bool = True

    model_config = {"frozen": True}


def _persist_cycle(cycle: DistributionCycle, results_dir: Path) -> Path:
    results_dir.mkdir(parents=True, exist_ok=True)
    latest_path = results_dir / "latest.json"
    archive_path = results_dir / f"cycle-{cycle.cycle_id}.json"

    payload = cycle.model_dump(mode="json")
    payload["partial"] = cycle.partial
    payload["distributed_amount"] = cycle.distributed_amount
    payload["unpaid_amount"] = cycle.unpaid_amount
    with latest_path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
    with archive_path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)

    log.info("Cycle persisted", extra={"latest": str(latest_path), "archive": str(archive_path)})
    return archive_path


def load_latest(results_dir: Path | str = "results") -> Optional[DistributionCycle]:
    """Load the last persisted cycle, or None when nothing was persisted yet."""
    latest_path = Path(results_dir) / "latest.json"
    if not latest_path.exists():
        return None
    with latest_path.open("r", encoding="utf-8") as f:
        return DistributionCycle.model_validate(json.load(f))


class DistributionPipeline:
    """
    Wires the pipeline components for one operating wallet and runs cycles.

    Parameters
    ----------
    ledger : LedgerClient
        Ledger reads, operation builders and submission.
    enumerator : TokenAccountEnumerator
        Token-account enumeration for holder snapshots.
    router : SwapRouter
        Swap-routing service.
    operator : str
        Address of the operating wallet (pays, swaps and distributes).
    cycle : CycleConfig
        Harvest share, minimum fee and persistence settings.
    policy : RetryPolicy
        Shared retry policy for the execution core and quote requests.
    band : BalanceBand
        Fee-collector balance band.
    swap : SwapConfig
        Mints and slippage ceilings for the two-hop conversion.
    disbursement : DisbursementConfig
        Reward mint and batching.
    sleep : callable
        Awaitable sleep for retry backoff (injected in tests).
    """

    def __init__(
        self,
        ledger: LedgerClient,
        enumerator: TokenAccountEnumerator,
        router: SwapRouter,
        operator: str,
        cycle: CycleConfig,
        policy: RetryPolicy,
        band: BalanceBand,
        swap: SwapConfig,
        disbursement: DisbursementConfig,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._ledger = ledger
        self._enumerator = enumerator
        self._operator = operator
        self._config = cycle
        self.core = ExecutionCore(ledger, policy, sleep=sleep)
        self.sentinel = BalanceSentinel(ledger, self.core, band)
        self.swaps = SwapOrchestrator(router, self.core, ledger, swap, policy, sleep=sleep)
        self.disbursement = DisbursementEngine(ledger, self.core, disbursement)

    @property
    def operator(self) -> str:
        return self._operator

    async def check_balance(self, fee_collector: str) -> BalanceAction:
        return await self.sentinel.check(fee_collector, self._operator)

    async def harvest(self, token_id: str, fee_collector: str) -> Tuple[int, Optional[str]]:
        """
        Move the reward share of accumulated fees to the operating wallet.

        Returns the harvested amount and its transaction identifier; (0, None)
        when the share is below the configured minimum.
        """
        program = self._config.fee_token_program
        collected = await self._ledger.get_token_balance(fee_collector, token_id, program)
        amount = collected * self._config.reward_share_bps // BPS_DENOMINATOR
        log.info(
            f"[HARVEST] {collected} collected, {amount} to convert",
            extra={"collected": collected, "amount": amount, "fee_collector": fee_collector},
        )
        if amount < self._config.minimum_fee_amount:
            return 0, None

        operator_account = self._ledger.receiving_account(self._operator, token_id, program)
        if not await self._ledger.account_exists(operator_account):
            setup = self._ledger.create_receiving_accounts(
                self._operator, [self._operator], token_id, program
            )
            await self.core.execute(setup, "ACCOUNT_SETUP")

        decimals = await self._ledger.get_mint_decimals(token_id)
        operation = self._ledger.token_transfer(
            token_id,
            fee_collector,
            [TokenTransfer(recipient=self._operator, amount=amount)],
            decimals,
            token_program=program,
            payer=fee_collector,
        )
        result = await self.core.execute(operation, "FEE_COLLECTION")
        return amount, result.signature

    async def _run_steps(
        self,
        cycle: DistributionCycle,
        token_id: str,
        fee_collector: str,
        excluded: Iterable[str],
    ) -> None:
        swap_cfg = self.swaps.config
        if token_id != swap_cfg.fee_mint:
            raise InvalidOperation(
                f"token {token_id} does not match the configured fee mint {swap_cfg.fee_mint}"
            )

        cycle.balance_action = await self.check_balance(fee_collector)

        program = self._config.fee_token_program
        fee_before = await self._ledger.get_token_balance(self._operator, token_id, program)
        amount, signature = await self.harvest(token_id, fee_collector)
        if signature is None:
            cycle.skipped_reason = (
                f"harvestable fees below minimum of {self._config.minimum_fee_amount}"
            )
            log.info(f"[CYCLE SKIPPED] {cycle.cycle_id}: {cycle.skipped_reason}")
            return
        cycle.harvested_amount = amount
        cycle.harvest_signature = signature

        # Only what this harvest delivered is sold; transfer-fee withholding can shrink it.
        fee_after = await self._ledger.get_token_balance(self._operator, token_id, program)
        received = fee_after - fee_before
        if received <= 0:
            raise InvalidOperation(f"harvest {signature} delivered no fee tokens to the operator")
        cycle.received_amount = received

        reward_cfg = self.disbursement.config
        reward_before = await self._ledger.get_token_balance(
            self._operator, reward_cfg.reward_mint, reward_cfg.reward_token_program
        )
        cycle.carried_reward_balance = reward_before
        cycle.swaps = await self.swaps.convert(received, self._operator)

        reward_after = await self._ledger.get_token_balance(
            self._operator, reward_cfg.reward_mint, reward_cfg.reward_token_program
        )
        reward_pool = max(reward_after - reward_before, 0)
        if reward_before:
            log.info(
                f"[REWARD POOL] {reward_pool} from this cycle's swaps, {reward_before} left untouched",
                extra={"reward_pool": reward_pool, "carried_reward_balance": reward_before},
            )

        exclusions = set(excluded) | {fee_collector, self._operator}
        cycle.snapshot = await take_snapshot(self._enumerator, token_id, exclusions)
        cycle.plan = allocate(cycle.snapshot, reward_pool)

        try:
            cycle.batches = tuple(await self.disbursement.disburse(cycle.plan, self._operator))
        except BatchPartialFailure as exc:
            cycle.batches = tuple(exc.completed) + (exc.failed_batch,)
            cycle.unpaid_allocations = tuple(exc.unpaid)
            raise

    async def run_distribution_cycle(
        self,
        token_id: str,
        fee_collector: str,
        excluded: Iterable[str] = (),
    ) -> DistributionCycle:
        """
        Run one distribution cycle and return its record.

        Never raises for pipeline failures: they are recorded on the returned
        cycle (status failed, reason, error type, completed batches, unpaid
        allocations). Persists the record when configured to; a write error
        is logged and does not change the cycle's status.
        """
        started = utcnow()
        cycle = DistributionCycle(
            cycle_id=started.strftime("%Y%m%dT%H%M%S%fZ"),
            token_id=token_id,
            fee_collector=fee_collector,
            started_at=started,
        )
        log.info(f"[CYCLE START] {cycle.cycle_id}", extra={"cycle_id": cycle.cycle_id, "token_id": token_id})

        with profile_block(f"cycle-{cycle.cycle_id}") as stats:
            try:
                await self._run_steps(cycle, token_id, fee_collector, excluded)
            except DistributionError as exc:
                log.error(
                    f"[CYCLE FAILED] {cycle.cycle_id}: {exc}",
                    extra={"cycle_id": cycle.cycle_id, "error": exc.to_dict()},
                )
                cycle.fail(exc)
            except Exception as exc:  # noqa: BLE001 - intentional broad catch to record failures
                log.exception(f"[CYCLE FAILED] {cycle.cycle_id}", extra={"cycle_id": cycle.cycle_id})
                cycle.fail(exc)

        cycle.finished_at = utcnow()
        cycle.profile = stats.as_dict()

        if cycle.succeeded:
            log.info(
                f"[CYCLE COMPLETE] {cycle.cycle_id}",
                extra={
                    "cycle_id": cycle.cycle_id,
                    "batches": len(cycle.batches),
                    "distributed": cycle.distributed_amount,
                    "duration": round(stats.duration_seconds, 2),
                },
            )

        if self._config.persist:
            try:
                _persist_cycle(cycle, self._config.results_dir)
            except OSError:
                log.exception(
                    f"[CYCLE] {cycle.cycle_id} could not be persisted",
                    extra={"cycle_id": cycle.cycle_id, "results_dir": str(self._config.results_dir)},
                )
        return cycle


__all__ = ["CycleConfig", "DistributionPipeline", "load_latest"]
