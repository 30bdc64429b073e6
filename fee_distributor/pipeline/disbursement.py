"""
Batched Disbursement Engine.

Pays an allocation plan out of the operating wallet in fixed-size batches,
one combined transfer operation per batch, strictly in order. Before each
batch, recipients without a receiving account for the reward asset get one in
a single ACCOUNT_SETUP operation.

The first failing batch stops the run: earlier batches stay paid, later ones
are never attempted, and BatchPartialFailure carries both sets to the caller.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from fee_distributor.domain.errors import BatchPartialFailure, DistributionError, InsufficientFunds
from fee_distributor.domain.models import Allocation, AllocationPlan, BatchOutcome
from fee_distributor.pipeline.abstract import LedgerClient, TokenTransfer
from fee_distributor.pipeline.execution import ExecutionCore, tier_for
from fee_distributor.utils.logging import get_logger

log = get_logger(__name__)


class DisbursementConfig(BaseModel):
    reward_mint: str
    reward_token_program: Optional[str] = None
    batch_size: int = Field(5, ge=1)
    large_transfer_tokens: int = Field(
        1_000, ge=0, description="Batch total, in whole reward tokens, above which it is a large transfer."
    )

    model_config = {"frozen": True}


def partition(allocations: Sequence[Allocation], size: int) -> List[Tuple[Allocation, ...]]:
    """Split into consecutive batches of `size`; the last one may be shorter."""
    if size < 1:
        raise ValueError("batch size must be >= 1")
    return [tuple(allocations[i : i + size]) for i in range(0, len(allocations), size)]


class DisbursementEngine:
    def __init__(self, ledger: LedgerClient, core: ExecutionCore, config: DisbursementConfig) -> None:
        self._ledger = ledger
        self._core = core
        self._config = config

    @property
    def config(self) -> DisbursementConfig:
        return self._config

    def label_for(self, batch_total: int, decimals: int) -> str:
        threshold = self._config.large_transfer_tokens * 10**decimals
        return "LARGE_TRANSFER" if batch_total > threshold else "DISTRIBUTION"

    async def _ensure_receiving_accounts(self, batch: Sequence[Allocation], payer: str) -> Optional[str]:
        mint = self._config.reward_mint
        program = self._config.reward_token_program
        missing = []
        for allocation in batch:
            account = self._ledger.receiving_account(allocation.recipient, mint, program)
            if not await self._ledger.account_exists(account):
                missing.append(allocation.recipient)
        if not missing:
            return None

        operation = self._ledger.create_receiving_accounts(payer, missing, mint, program)
        result = await self._core.execute(operation, "ACCOUNT_SETUP")
        log.info(
            f"[ACCOUNT SETUP] created {len(missing)} receiving account(s)",
            extra={"owners": missing, "signature": result.signature},
        )
        return result.signature

    async def disburse(self, plan: AllocationPlan, operator: str) -> List[BatchOutcome]:
        """
        Pay every allocation of `plan` from `operator`.

        Returns
        -------
        list[BatchOutcome]
            One successful outcome per batch, allocations stamped with the
            batch's transaction identifier.

        Raises
        ------
        InsufficientFunds
            The operator's reward balance cannot cover the plan.
        BatchPartialFailure
            A batch failed; carries completed outcomes and unpaid allocations.
        """
        if not plan.allocations:
            return []

        mint = self._config.reward_mint
        program = self._config.reward_token_program
        available = await self._ledger.get_token_balance(operator, mint, program)
        if available < plan.total_allocated:
            raise InsufficientFunds(operator, plan.total_allocated, available)

        decimals = await self._ledger.get_mint_decimals(mint)
        batches = partition(plan.allocations, self._config.batch_size)
        completed: List[BatchOutcome] = []

        for index, batch in enumerate(batches, start=1):
            batch_total = sum(a.amount for a in batch)
            label = self.label_for(batch_total, decimals)
            log.info(
                f"[BATCH {index}/{len(batches)}] {len(batch)} recipient(s), {batch_total} total",
                extra={"batch": index, "recipients": len(batch), "amount": batch_total, "label": label},
            )
            try:
                await self._ensure_receiving_accounts(batch, operator)
                operation = self._ledger.token_transfer(
                    mint,
                    operator,
                    [TokenTransfer(recipient=a.recipient, amount=a.amount) for a in batch],
                    decimals,
                    token_program=program,
                    payer=operator,
                )
                result = await self._core.execute(operation, label)
            except DistributionError as exc:
                failed = BatchOutcome(
                    index=index,
                    allocations=batch,
                    tier=tier_for(label),
                    error=str(exc),
                    attempts=getattr(exc, "attempts", 0),
                )
                unpaid = [a for pending in batches[index - 1 :] for a in pending]
                log.error(
                    f"[BATCH {index}/{len(batches)}] failed, stopping disbursement",
                    extra={
                        "batch": index,
                        "completed_batches": len(completed),
                        "unpaid": len(unpaid),
                        "error": str(exc),
                    },
                )
                raise BatchPartialFailure(failed, completed, unpaid, exc) from exc

            completed.append(
                BatchOutcome(
                    index=index,
                    allocations=tuple(a.stamped(result.signature) for a in batch),
                    tier=result.tier,
                    signature=result.signature,
                    attempts=result.attempts,
                )
            )
            log.info(
                f"[BATCH {index}/{len(batches)}] confirmed {result.signature}",
                extra={"batch": index, "signature": result.signature},
            )

        return completed


__all__ = ["DisbursementConfig", "DisbursementEngine", "partition"]
