"""
Balance Sentinel.

Keeps the fee-collection account's native-currency balance inside a band so it
can always pay its own transaction costs:

- below `min_balance`: top up to exactly `target_balance` from the operating
  wallet, provided the operator keeps at least `operator_min_balance` itself;
- above `target_balance` (and sweeping enabled): send the excess back to the
  operating wallet;
- otherwise: nothing.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

from fee_distributor.domain.errors import InsufficientOperatingFunds
from fee_distributor.domain.models import Amount, BalanceAction, BalanceState
from fee_distributor.pipeline.abstract import LedgerClient
from fee_distributor.pipeline.execution import ExecutionCore, tier_for
from fee_distributor.utils.logging import get_logger

log = get_logger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000


class BalanceBand(BaseModel):
    min_balance: Amount = LAMPORTS_PER_SOL // 10
    target_balance: Amount = LAMPORTS_PER_SOL // 2
    operator_min_balance: Amount = Field(
        LAMPORTS_PER_SOL // 10, description="Floor the operating wallet keeps after a top-up."
    )
    large_transfer_threshold: Amount = LAMPORTS_PER_SOL
    sweep_excess: bool = False

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_band(self) -> "BalanceBand":
        if self.min_balance > self.target_balance:
            raise ValueError("min_balance must not exceed target_balance")
        return self


class BalanceSentinel:
    """
    Parameters
    ----------
    ledger : LedgerClient
        Balance reads and native-transfer operation builder.
    core : ExecutionCore
        Executes top-up and sweep transfers.
    band : BalanceBand
        Thresholds in the smallest native unit.
    """

    def __init__(self, ledger: LedgerClient, core: ExecutionCore, band: BalanceBand) -> None:
        self._ledger = ledger
        self._core = core
        self._band = band

    @property
    def band(self) -> BalanceBand:
        return self._band

    async def read_state(self, address: str) -> BalanceState:
        balance = await self._ledger.get_balance(address)
        return BalanceState(
            address=address,
            balance=balance,
            min_balance=self._band.min_balance,
            target_balance=self._band.target_balance,
        )

    async def ensure_min_balance(self, fee_collector: str, operator: str) -> BalanceAction:
        state = await self.read_state(fee_collector)
        if not state.below_min:
            return BalanceAction(action="none", balance_before=state.balance)

        gap = self._band.target_balance - state.balance
        operator_balance = await self._ledger.get_balance(operator)
        required = gap + self._band.operator_min_balance
        if operator_balance < required:
            log.error(
                "[BALANCE] operating wallet cannot fund top-up",
                extra={"operator": operator, "required": required, "available": operator_balance},
            )
            raise InsufficientOperatingFunds(
                operator,
                required,
                operator_balance,
                message=(
                    f"operating wallet {operator} holds {operator_balance}, "
                    f"needs {required} to top up {fee_collector} by {gap}"
                ),
            )

        label = "SMALL_TRANSFER" if gap <= self._band.large_transfer_threshold else "REGULAR_TRANSFER"
        operation = self._ledger.native_transfer(operator, fee_collector, gap)
        result = await self._core.execute(operation, label)
        log.info(
            f"[BALANCE] topped up {fee_collector} by {gap}",
            extra={"fee_collector": fee_collector, "amount": gap, "signature": result.signature},
        )
        return BalanceAction(
            action="top_up",
            amount=gap,
            signature=result.signature,
            balance_before=state.balance,
            tier=tier_for(label),
        )

    async def sweep_excess(self, fee_collector: str, operator: str) -> BalanceAction:
        state = await self.read_state(fee_collector)
        if not self._band.sweep_excess or not state.above_target:
            return BalanceAction(action="none", balance_before=state.balance)

        excess = state.balance - self._band.target_balance
        label = "LARGE_TRANSFER" if excess > self._band.large_transfer_threshold else "SMALL_TRANSFER"
        operation = self._ledger.native_transfer(fee_collector, operator, excess)
        result = await self._core.execute(operation, label)
        log.info(
            f"[BALANCE] swept {excess} from {fee_collector}",
            extra={"fee_collector": fee_collector, "amount": excess, "signature": result.signature},
        )
        return BalanceAction(
            action="sweep",
            amount=excess,
            signature=result.signature,
            balance_before=state.balance,
            tier=tier_for(label),
        )

    async def check(self, fee_collector: str, operator: str) -> BalanceAction:
        """Top up when below the band, otherwise sweep when above it (if enabled)."""
        action = await self.ensure_min_balance(fee_collector, operator)
        if action.action != "none":
            return action
        return await self.sweep_excess(fee_collector, operator)


__all__ = ["BalanceBand", "BalanceSentinel", "LAMPORTS_PER_SOL"]
