from __future__ import annotations

import pytest

from fee_distributor.domain.errors import BatchPartialFailure, InsufficientFunds
from fee_distributor.domain.models import Allocation, AllocationPlan, Tier
from fee_distributor.pipeline.disbursement import DisbursementConfig, DisbursementEngine, partition
from fee_distributor.pipeline.execution import ExecutionCore
from tests.conftest import OPERATOR, REWARD_MINT

RECIPIENT_COUNT = 12
BATCH_SIZE = 5
AMOUNT_EACH = 100


def _plan(count: int = RECIPIENT_COUNT, amount: int = AMOUNT_EACH) -> AllocationPlan:
    allocations = tuple(
        Allocation(recipient=f"Holder{i:02d}", amount=amount, holder_balance=1) for i in range(count)
    )
    total = count * amount
    return AllocationPlan(reward_pool=total, allocations=allocations, total_allocated=total)


def _engine(ledger, policy, sleep, **overrides) -> DisbursementEngine:
    config = DisbursementConfig(reward_mint=REWARD_MINT, batch_size=BATCH_SIZE, **overrides)
    return DisbursementEngine(ledger, ExecutionCore(ledger, policy, sleep=sleep), config)


def _recipients(operation) -> set:
    return {instruction[3] for instruction in operation.instructions if instruction[0] == "token"}


def _fund(ledger, plan: AllocationPlan, with_accounts: bool = True) -> None:
    ledger.tokens[(OPERATOR, REWARD_MINT)] = plan.total_allocated
    if with_accounts:
        for allocation in plan.allocations:
            ledger.accounts.add(ledger.receiving_account(allocation.recipient, REWARD_MINT))


def test_partition_keeps_order_and_short_tail() -> None:
    batches = partition(_plan().allocations, BATCH_SIZE)

    assert [len(b) for b in batches] == [5, 5, 2]
    assert [a.recipient for b in batches for a in b] == [f"Holder{i:02d}" for i in range(12)]


def test_partition_rejects_zero_size() -> None:
    with pytest.raises(ValueError):
        partition(_plan().allocations, 0)


@pytest.mark.asyncio
async def test_disburse_pays_every_batch_in_order(ledger, policy, recording_sleep) -> None:
    plan = _plan()
    _fund(ledger, plan)

    outcomes = await _engine(ledger, policy, recording_sleep).disburse(plan, OPERATOR)

    assert [o.index for o in outcomes] == [1, 2, 3]
    assert all(o.succeeded for o in outcomes)
    assert all(a.signature == o.signature for o in outcomes for a in o.allocations)
    assert ledger.tokens[(OPERATOR, REWARD_MINT)] == 0
    assert ledger.tokens[("Holder11", REWARD_MINT)] == AMOUNT_EACH
    assert len(ledger.submitted) == 3


@pytest.mark.asyncio
async def test_failed_batch_stops_disbursement(ledger, policy, recording_sleep) -> None:
    plan = _plan()
    _fund(ledger, plan)
    second_batch = {f"Holder{i:02d}" for i in range(5, 10)}
    ledger.fail_when = lambda op: bool(_recipients(op) & second_batch)

    with pytest.raises(BatchPartialFailure) as info:
        await _engine(ledger, policy, recording_sleep).disburse(plan, OPERATOR)

    failure = info.value
    assert [b.index for b in failure.completed] == [1]
    assert failure.failed_batch.index == 2
    assert failure.failed_batch.attempts == policy.max_retries
    assert not failure.failed_batch.succeeded
    assert [a.recipient for a in failure.unpaid] == [f"Holder{i:02d}" for i in range(5, 12)]

    # batch 1 paid, batch 3 never attempted
    assert ledger.tokens[("Holder00", REWARD_MINT)] == AMOUNT_EACH
    assert ledger.tokens[(OPERATOR, REWARD_MINT)] == 7 * AMOUNT_EACH
    attempted = set().union(*(_recipients(op) for op in ledger.submitted))
    assert not attempted & {"Holder10", "Holder11"}


@pytest.mark.asyncio
async def test_missing_receiving_accounts_are_created_first(
    ledger, policy, recording_sleep
) -> None:
    plan = _plan(count=2)
    _fund(ledger, plan, with_accounts=False)
    ledger.accounts.add(ledger.receiving_account("Holder00", REWARD_MINT))

    await _engine(ledger, policy, recording_sleep).disburse(plan, OPERATOR)

    setup, transfer = ledger.submitted
    assert setup.instructions == (("create", "Holder01", REWARD_MINT),)
    assert _recipients(transfer) == {"Holder00", "Holder01"}
    assert ledger.receiving_account("Holder01", REWARD_MINT) in ledger.accounts


@pytest.mark.asyncio
async def test_large_batches_use_secure_tier(ledger, policy, recording_sleep) -> None:
    plan = _plan(count=2, amount=2_000_000)
    _fund(ledger, plan)
    engine = _engine(ledger, policy, recording_sleep, large_transfer_tokens=1)

    outcomes = await engine.disburse(plan, OPERATOR)

    assert outcomes[0].tier is Tier.SECURE
    assert ledger.confirmed[-1][1] == "finalized"


@pytest.mark.asyncio
async def test_disburse_requires_covering_balance(ledger, policy, recording_sleep) -> None:
    plan = _plan()
    ledger.tokens[(OPERATOR, REWARD_MINT)] = plan.total_allocated - 1

    with pytest.raises(InsufficientFunds):
        await _engine(ledger, policy, recording_sleep).disburse(plan, OPERATOR)

    assert ledger.submitted == []


@pytest.mark.asyncio
async def test_empty_plan_is_a_no_op(ledger, policy, recording_sleep) -> None:
    plan = AllocationPlan(reward_pool=5, remainder=5)

    assert await _engine(ledger, policy, recording_sleep).disburse(plan, OPERATOR) == []
    assert ledger.submitted == []
