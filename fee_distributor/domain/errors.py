"""
Error taxonomy for the fee-to-reward distribution pipeline.

Every failure the pipeline knows how to reason about derives from
DistributionError. The `retryable` class attribute tells the Execution Core and
the swap quote loop whether a local retry is allowed; the Supervisor makes the
cycle-level retry decision independently of it.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence


class DistributionError(Exception):
    """Base class for every pipeline failure."""

    retryable: bool = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error_type": type(self).__name__, "message": self.message}
        payload.update({k: v for k, v in self.context.items() if _is_json_scalar(v)})
        return payload


def _is_json_scalar(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


class InvalidOperation(DistributionError):
    """Operation is structurally unusable (no instructions, oversized packet)."""


class SimulationError(DistributionError):
    """Simulation against current network state reported a failure."""

    def __init__(self, label: str, reason: Any, logs: Optional[Sequence[str]] = None) -> None:
        super().__init__(f"{label}: simulation failed: {reason}", label=label)
        self.label = label
        self.reason = reason
        self.logs = list(logs or [])


class SubmissionError(DistributionError):
    """Submission was rejected or the operation failed after landing."""

    retryable = True


class ConfirmationTimeout(DistributionError):
    """Confirmation did not reach the requested commitment within the tier timeout."""

    retryable = True

    def __init__(self, signature: str, commitment: str, timeout: float) -> None:
        super().__init__(
            f"confirmation of {signature} at '{commitment}' exceeded {timeout:.1f}s",
            signature=signature,
            commitment=commitment,
            timeout=timeout,
        )
        self.signature = signature


class ExecutionFailed(DistributionError):
    """Terminal outcome of the Execution Core once its retries are spent."""

    def __init__(self, label: str, last_error: BaseException, attempts: int) -> None:
        super().__init__(
            f"{label}: failed after {attempts} attempt(s): {last_error}",
            label=label,
            attempts=attempts,
            last_error=str(last_error),
        )
        self.label = label
        self.last_error = last_error
        self.attempts = attempts


class InsufficientFunds(DistributionError):
    """An account cannot cover the amount a step needs."""

    def __init__(self, address: str, required: int, available: int, message: str = "") -> None:
        super().__init__(
            message or f"{address} holds {available}, {required} required",
            address=address,
            required=required,
            available=available,
        )
        self.address = address
        self.required = required
        self.available = available


class InsufficientOperatingFunds(InsufficientFunds):
    """The operating wallet cannot fund a top-up and keep its own minimum."""


class QuoteUnavailable(DistributionError):
    """The swap-routing service returned no usable quote."""

    retryable = True


class SlippageExceeded(DistributionError):
    """A quote breaches the configured slippage tolerance."""

    retryable = True


class PriceImpactExceeded(SlippageExceeded):
    """A quote's price impact breaches the configured ceiling."""


class SwapHopFailed(DistributionError):
    """One hop of the two-hop conversion did not complete."""

    def __init__(self, hop: int, cause: BaseException) -> None:
        super().__init__(f"swap hop {hop} failed: {cause}", hop=hop, cause=type(cause).__name__)
        self.hop = hop
        self.cause = cause


class BatchPartialFailure(DistributionError):
    """A disbursement batch failed; earlier batches stay paid."""

    def __init__(
        self,
        failed_batch: Any,
        completed: Sequence[Any],
        unpaid: Sequence[Any],
        cause: BaseException,
    ) -> None:
        super().__init__(
            f"batch {failed_batch.index} failed after {len(completed)} completed batch(es); "
            f"{len(unpaid)} allocation(s) unpaid: {cause}",
            failed_batch=failed_batch.index,
            completed_batches=len(completed),
            unpaid=len(unpaid),
        )
        self.failed_batch = failed_batch
        self.completed = list(completed)
        self.unpaid = list(unpaid)
        self.cause = cause


class ArithmeticOverflow(DistributionError):
    """A fixed-width amount computation exceeded its bit width."""


class LedgerUnavailable(DistributionError):
    """No configured ledger endpoint passed its health check."""


__all__ = [
    "DistributionError",
    "InvalidOperation",
    "SimulationError",
    "SubmissionError",
    "ConfirmationTimeout",
    "ExecutionFailed",
    "InsufficientFunds",
    "InsufficientOperatingFunds",
    "QuoteUnavailable",
    "SlippageExceeded",
    "PriceImpactExceeded",
    "SwapHopFailed",
    "BatchPartialFailure",
    "ArithmeticOverflow",
    "LedgerUnavailable",
]
