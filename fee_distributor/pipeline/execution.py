"""
Transaction Execution Core.

Simulates, submits, confirms and retries a single ledger operation. Everything
that touches the ledger with a state-changing operation goes through
`ExecutionCore.execute`.

Retry policy:
- Simulation failures abort immediately (no submission, no retry).
- Submission failures and confirmation timeouts are retried up to
  `RetryPolicy.max_retries` attempts in total, sleeping
  `base_delay * backoff_factor**n` after failed attempt n (0-based).
- The loop is driven by tenacity with an injectable sleep so the policy can be
  exercised without real timers.

A confirmation timeout does not cancel the submission already sent; the next
attempt may therefore land a duplicate if the first one was merely slow.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Mapping, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fee_distributor.domain.errors import (
    ConfirmationTimeout,
    ExecutionFailed,
    InvalidOperation,
    SimulationError,
    SubmissionError,
)
from fee_distributor.domain.models import ConfirmationTier, ExecutionResult, RetryPolicy, Tier
from fee_distributor.pipeline.abstract import LedgerClient, Operation, SimulationOutcome
from fee_distributor.utils.logging import get_logger

log = get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

DEFAULT_TIERS: Dict[Tier, ConfirmationTier] = {
    Tier.FAST: ConfirmationTier(name=Tier.FAST, commitment="processed", timeout=30.0),
    Tier.STANDARD: ConfirmationTier(name=Tier.STANDARD, commitment="confirmed", timeout=60.0),
    Tier.SECURE: ConfirmationTier(name=Tier.SECURE, commitment="finalized", timeout=90.0),
}

# Transaction-type labels and the confirmation tier each one requires.
TRANSACTION_TYPES: Dict[str, Tier] = {
    "INITIAL_MINT": Tier.SECURE,
    "TOKEN_CREATION": Tier.SECURE,
    "LARGE_TRANSFER": Tier.SECURE,
    "AUTHORITY_CHANGE": Tier.SECURE,
    "DISTRIBUTION": Tier.STANDARD,
    "FEE_COLLECTION": Tier.STANDARD,
    "REGULAR_TRANSFER": Tier.STANDARD,
    "SWAP": Tier.STANDARD,
    "ACCOUNT_SETUP": Tier.STANDARD,
    "BALANCE_CHECK": Tier.FAST,
    "SMALL_TRANSFER": Tier.FAST,
    "METADATA_UPDATE": Tier.FAST,
}

RETRYABLE_ERRORS = (SubmissionError, ConfirmationTimeout)


def tier_for(label: str) -> Tier:
    """Resolve a transaction-type label to its tier; unknown labels are standard."""
    return TRANSACTION_TYPES.get(label.upper(), Tier.STANDARD)


class ExecutionCore:
    """
    Execute ledger operations with simulation, tiered confirmation and bounded retry.

    Parameters
    ----------
    ledger : LedgerClient
        Ledger adapter used for simulation, submission and confirmation.
    policy : RetryPolicy
        Attempt budget and exponential backoff parameters.
    tiers : Mapping[Tier, ConfirmationTier] | None
        Commitment level and timeout per tier. Defaults to DEFAULT_TIERS.
    sleep : callable
        Awaitable sleep used between attempts (injected in tests).
    """

    def __init__(
        self,
        ledger: LedgerClient,
        policy: RetryPolicy,
        tiers: Optional[Mapping[Tier, ConfirmationTier]] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._ledger = ledger
        self._policy = policy
        self._tiers = dict(tiers or DEFAULT_TIERS)
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def tier(self, label: str) -> ConfirmationTier:
        return self._tiers[tier_for(label)]

    def validate(self, operation: Operation, label: str) -> None:
        if operation.is_empty:
            raise InvalidOperation(f"{label}: operation carries no instructions", label=label)
        if not operation.payer:
            raise InvalidOperation(f"{label}: operation has no fee payer", label=label)

    async def simulate(self, operation: Operation, label: str) -> SimulationOutcome:
        log.debug(f"[TX SIMULATE] {label}", extra={"label": label, "op": operation.description})
        outcome = await self._ledger.simulate(operation)
        if not outcome.ok:
            log.error(
                f"[TX SIMULATION FAILED] {label}",
                extra={"label": label, "error": str(outcome.err), "logs": list(outcome.logs)[-5:]},
            )
            raise SimulationError(label, outcome.err, outcome.logs)
        return outcome

    async def _attempt(self, operation: Operation, tier: ConfirmationTier) -> str:
        try:
            signature = await self._ledger.submit(operation)
        except SubmissionError:
            raise
        except OSError as exc:
            raise SubmissionError(f"submission transport error: {exc}") from exc

        try:
            await asyncio.wait_for(
                self._ledger.confirm(signature, tier.commitment), timeout=tier.timeout
            )
        except asyncio.TimeoutError as exc:
            raise ConfirmationTimeout(signature, tier.commitment, tier.timeout) from exc
        return signature

    def _before_sleep(self, label: str) -> Callable[[RetryCallState], None]:
        def _log(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            delay = state.next_action.sleep if state.next_action else 0.0
            log.warning(
                f"[TX RETRY] {label} attempt {state.attempt_number}/{self._policy.max_retries} "
                f"failed, retrying in {delay:.2f}s",
                extra={
                    "label": label,
                    "attempt": state.attempt_number,
                    "delay": delay,
                    "error": str(error),
                },
            )

        return _log

    async def execute(self, operation: Operation, label: str) -> ExecutionResult:
        """
        Run `operation` through simulate -> submit -> confirm.

        Returns
        -------
        ExecutionResult
            Transaction identifier, attempts used and tier.

        Raises
        ------
        InvalidOperation, SimulationError
            Before any submission; never retried.
        ExecutionFailed
            Once every attempt has failed with a retryable error.
        """
        self.validate(operation, label)
        await self.simulate(operation, label)
        tier = self.tier(label)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._policy.max_retries),
            wait=wait_exponential(
                multiplier=self._policy.base_delay,
                exp_base=self._policy.backoff_factor,
                min=0,
            ),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            sleep=self._sleep,
            before_sleep=self._before_sleep(label),
            reraise=False,
        )

        attempts = 0
        signature = ""
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    signature = await self._attempt(operation, tier)
        except RetryError as exc:
            last_error = exc.last_attempt.exception() or exc
            attempts = exc.last_attempt.attempt_number
            log.error(
                f"[TX FAILED] {label} after {attempts} attempt(s)",
                extra={"label": label, "attempts": attempts, "error": str(last_error)},
            )
            raise ExecutionFailed(label, last_error, attempts) from last_error

        log.info(
            f"[TX CONFIRMED] {label} {signature}",
            extra={
                "label": label,
                "signature": signature,
                "attempts": attempts,
                "commitment": tier.commitment,
            },
        )
        return ExecutionResult(signature=signature, attempts=attempts, tier=tier.name, label=label)


__all__ = [
    "DEFAULT_TIERS",
    "TRANSACTION_TYPES",
    "ExecutionCore",
    "tier_for",
]
