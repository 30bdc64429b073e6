"""
Domain models for the fee-to-reward distribution pipeline.

Amounts are integers in the smallest unit of their asset and are bounded by a
fixed 128-bit width. Everything except DistributionCycle is immutable; the
cycle record is filled in step by step by the orchestrator that owns it.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

U128_MAX = (1 << 128) - 1

Amount = Annotated[int, Field(ge=0, le=U128_MAX)]

_FROZEN = {"frozen": True, "populate_by_name": True, "arbitrary_types_allowed": False}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    FAST = "fast"
    STANDARD = "standard"
    SECURE = "secure"


class ConfirmationTier(BaseModel):
    """Named bundle of finality level and wall-clock confirmation timeout."""

    name: Tier
    commitment: str = Field(..., description="Ledger commitment level to await.")
    timeout: float = Field(..., gt=0, description="Seconds before the wait counts as failed.")

    model_config = _FROZEN


class RetryPolicy(BaseModel):
    """
    Retry configuration shared by the Execution Core and the Supervisor.

    `max_retries` is the total number of attempts the Execution Core makes.
    The delay after failed attempt n (0-based) is base_delay * backoff_factor**n.
    """

    max_retries: int = Field(3, ge=1)
    base_delay: float = Field(1.0, ge=0)
    backoff_factor: float = Field(2.0, ge=1)
    timeout: float = Field(30.0, gt=0, description="Per-request timeout for untiered calls.")

    model_config = _FROZEN

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * self.backoff_factor**attempt

    def max_total_wait(self) -> float:
        return sum(self.delay_for(i) for i in range(self.max_retries))


class HolderRecord(BaseModel):
    address: str = Field(..., min_length=1)
    balance: Amount

    model_config = _FROZEN


class HolderSnapshot(BaseModel):
    """Holders of the fee-bearing token captured at cycle start."""

    token_id: str
    holders: Tuple[HolderRecord, ...] = ()
    total_balance: Amount = 0
    excluded_count: int = Field(0, ge=0)
    captured_at: datetime = Field(default_factory=utcnow)

    model_config = _FROZEN

    @model_validator(mode="after")
    def _check_total(self) -> "HolderSnapshot":
        if sum(h.balance for h in self.holders) != self.total_balance:
            raise ValueError("total_balance must equal the sum of holder balances")
        return self

    @property
    def count(self) -> int:
        return len(self.holders)

    @property
    def addresses(self) -> Tuple[str, ...]:
        return tuple(h.address for h in self.holders)


class Allocation(BaseModel):
    recipient: str = Field(..., min_length=1)
    amount: Amount
    holder_balance: Amount = 0
    signature: Optional[str] = None

    model_config = _FROZEN

    def stamped(self, signature: str) -> "Allocation":
        return self.model_copy(update={"signature": signature})


class AllocationPlan(BaseModel):
    """
    Allocations for one reward pool.

    `remainder` is the part of the pool that per-holder floor rounding leaves
    undistributed. It stays in the operating wallet and is carried into the next
    cycle's pool.
    """

    reward_pool: Amount
    allocations: Tuple[Allocation, ...] = ()
    total_allocated: Amount = 0
    remainder: Amount = 0
    dust_recipients: int = Field(0, ge=0)

    model_config = _FROZEN

    @model_validator(mode="after")
    def _check_accounting(self) -> "AllocationPlan":
        if sum(a.amount for a in self.allocations) != self.total_allocated:
            raise ValueError("total_allocated must equal the sum of allocation amounts")
        if self.total_allocated + self.remainder != self.reward_pool:
            raise ValueError("total_allocated + remainder must equal reward_pool")
        return self


class SwapQuote(BaseModel):
    input_mint: str
    output_mint: str
    in_amount: Amount
    out_amount: Amount
    min_out_amount: Amount
    slippage_bps: int = Field(..., ge=0)
    price_impact_pct: float = 0.0
    route_labels: Tuple[str, ...] = ()
    raw: Dict[str, Any] = Field(default_factory=dict, repr=False)

    model_config = {"frozen": True, "populate_by_name": True}


class SwapResult(BaseModel):
    hop: int = Field(..., ge=1, le=2)
    input_mint: str
    output_mint: str
    in_amount: Amount
    quoted_out_amount: Amount
    min_out_amount: Amount
    price_impact_pct: float = 0.0
    route_labels: Tuple[str, ...] = ()
    signature: str
    attempts: int = 1

    model_config = _FROZEN


class BatchOutcome(BaseModel):
    index: int = Field(..., ge=1)
    allocations: Tuple[Allocation, ...]
    tier: Tier
    signature: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0

    model_config = _FROZEN

    @property
    def succeeded(self) -> bool:
        return self.signature is not None and self.error is None

    @property
    def total_amount(self) -> int:
        return sum(a.amount for a in self.allocations)


class BalanceState(BaseModel):
    address: str
    balance: Amount
    min_balance: Amount
    target_balance: Amount

    model_config = _FROZEN

    @property
    def below_min(self) -> bool:
        return self.balance < self.min_balance

    @property
    def above_target(self) -> bool:
        return self.balance > self.target_balance

    @property
    def within_band(self) -> bool:
        return not (self.below_min or self.above_target)


class BalanceAction(BaseModel):
    action: Literal["none", "top_up", "sweep"] = "none"
    amount: Amount = 0
    signature: Optional[str] = None
    balance_before: Amount = 0
    tier: Optional[Tier] = None

    model_config = _FROZEN


class ExecutionResult(BaseModel):
    signature: str
    attempts: int = Field(..., ge=1)
    tier: Tier
    label: str

    model_config = _FROZEN


class CycleStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class DistributionCycle(BaseModel):
    """Record of one distribution cycle, owned by the orchestrator that runs it."""

    cycle_id: str
    token_id: str
    fee_collector: str
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    status: CycleStatus = CycleStatus.SUCCEEDED
    reason: Optional[str] = None
    error_type: Optional[str] = None
    harvested_amount: Amount = 0
    harvest_signature: Optional[str] = None
    received_amount: Amount = 0
    carried_reward_balance: Amount = 0
    balance_action: Optional[BalanceAction] = None
    swaps: Tuple[SwapResult, ...] = ()
    snapshot: Optional[HolderSnapshot] = None
    plan: Optional[AllocationPlan] = None
    batches: Tuple[BatchOutcome, ...] = ()
    unpaid_allocations: Tuple[Allocation, ...] = ()
    skipped_reason: Optional[str] = None
    profile: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"validate_assignment": True, "populate_by_name": True}

    @property
    def succeeded(self) -> bool:
        return self.status is CycleStatus.SUCCEEDED

    @property
    def partial(self) -> bool:
        return self.status is CycleStatus.FAILED and any(b.succeeded for b in self.batches)

    @property
    def distributed_amount(self) -> int:
        return sum(b.total_amount for b in self.batches if b.succeeded)

    @property
    def unpaid_amount(self) -> int:
        return sum(a.amount for a in self.unpaid_allocations)

    def fail(self, exc: BaseException) -> None:
        self.status = CycleStatus.FAILED
        self.reason = str(exc)
        self.error_type = type(exc).__name__


class SupervisorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    RETRY_SCHEDULED = "retry_scheduled"
    HALTED = "halted"


class SupervisorStatus(BaseModel):
    is_processing: bool
    last_run_time: Optional[datetime] = None
    run_count: int = 0
    retry_count: int = 0
    state: SupervisorState = SupervisorState.IDLE
    last_status: Optional[CycleStatus] = None
    next_retry_at: Optional[datetime] = None

    model_config = _FROZEN


__all__ = [
    "U128_MAX",
    "Amount",
    "Tier",
    "ConfirmationTier",
    "RetryPolicy",
    "HolderRecord",
    "HolderSnapshot",
    "Allocation",
    "AllocationPlan",
    "SwapQuote",
    "SwapResult",
    "BatchOutcome",
    "BalanceState",
    "BalanceAction",
    "ExecutionResult",
    "CycleStatus",
    "DistributionCycle",
    "SupervisorState",
    "SupervisorStatus",
    "utcnow",
]
