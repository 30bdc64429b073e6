from __future__ import annotations

import pytest

from fee_distributor.domain.errors import (
    ConfirmationTimeout,
    ExecutionFailed,
    InvalidOperation,
    SimulationError,
    SubmissionError,
)
from fee_distributor.domain.models import ConfirmationTier, RetryPolicy, Tier
from fee_distributor.pipeline.abstract import Operation
from fee_distributor.pipeline.execution import DEFAULT_TIERS, ExecutionCore, tier_for
from tests.conftest import OPERATOR

MAX_ATTEMPTS = 3
EXPECTED_BACKOFF = [1.0, 2.0]
TRANSFER_AMOUNT = 1_000

FAST_TIMEOUT_TIERS = {
    tier: ConfirmationTier(name=tier, commitment=DEFAULT_TIERS[tier].commitment, timeout=0.01)
    for tier in Tier
}


def _transfer(ledger) -> Operation:
    ledger.native[OPERATOR] = 10 * TRANSFER_AMOUNT
    return ledger.native_transfer(OPERATOR, "Recipient1111", TRANSFER_AMOUNT)


@pytest.mark.asyncio
async def test_execute_confirms_at_tier_commitment(ledger, policy, recording_sleep) -> None:
    core = ExecutionCore(ledger, policy, sleep=recording_sleep)

    result = await core.execute(_transfer(ledger), "LARGE_TRANSFER")

    assert result.attempts == 1
    assert result.tier is Tier.SECURE
    assert ledger.confirmed == [(result.signature, "finalized")]
    assert ledger.native["Recipient1111"] == TRANSFER_AMOUNT
    assert recording_sleep.delays == []


@pytest.mark.asyncio
async def test_simulation_failure_never_submits(ledger, policy, recording_sleep) -> None:
    ledger.simulation_error = {"InstructionError": [0, "Custom(1)"]}
    core = ExecutionCore(ledger, policy, sleep=recording_sleep)

    with pytest.raises(SimulationError) as info:
        await core.execute(_transfer(ledger), "DISTRIBUTION")

    assert info.value.logs == ["Program failed"]
    assert ledger.simulate_calls == 1
    assert ledger.submitted == []
    assert recording_sleep.delays == []


@pytest.mark.asyncio
async def test_empty_operation_is_invalid(ledger, policy) -> None:
    core = ExecutionCore(ledger, policy)

    with pytest.raises(InvalidOperation):
        await core.execute(Operation(payer=OPERATOR), "DISTRIBUTION")

    assert ledger.simulate_calls == 0


@pytest.mark.asyncio
async def test_submission_failures_are_retried_with_exponential_backoff(
    ledger, policy, recording_sleep
) -> None:
    ledger.submit_failures = MAX_ATTEMPTS - 1
    core = ExecutionCore(ledger, policy, sleep=recording_sleep)

    result = await core.execute(_transfer(ledger), "DISTRIBUTION")

    assert result.attempts == MAX_ATTEMPTS
    assert len(ledger.submitted) == MAX_ATTEMPTS
    assert recording_sleep.delays == EXPECTED_BACKOFF


@pytest.mark.asyncio
async def test_attempts_are_bounded_by_max_retries(ledger, policy, recording_sleep) -> None:
    ledger.submit_failures = 10
    core = ExecutionCore(ledger, policy, sleep=recording_sleep)

    with pytest.raises(ExecutionFailed) as info:
        await core.execute(_transfer(ledger), "DISTRIBUTION")

    assert info.value.attempts == MAX_ATTEMPTS
    assert isinstance(info.value.last_error, SubmissionError)
    assert len(ledger.submitted) == MAX_ATTEMPTS
    assert recording_sleep.delays == EXPECTED_BACKOFF


@pytest.mark.asyncio
async def test_confirmation_timeout_is_retried(ledger, policy, recording_sleep) -> None:
    ledger.hanging_confirmations = 1
    core = ExecutionCore(ledger, policy, tiers=FAST_TIMEOUT_TIERS, sleep=recording_sleep)

    result = await core.execute(_transfer(ledger), "SMALL_TRANSFER")

    assert result.attempts == 2
    assert recording_sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_persistent_confirmation_timeout_fails(ledger, recording_sleep) -> None:
    ledger.hanging_confirmations = 2
    core = ExecutionCore(
        ledger,
        RetryPolicy(max_retries=2, base_delay=0.5, backoff_factor=3.0),
        tiers=FAST_TIMEOUT_TIERS,
        sleep=recording_sleep,
    )

    with pytest.raises(ExecutionFailed) as info:
        await core.execute(_transfer(ledger), "SWAP")

    assert info.value.attempts == 2
    assert isinstance(info.value.last_error, ConfirmationTimeout)
    assert recording_sleep.delays == [0.5]


def test_transaction_labels_map_to_tiers() -> None:
    assert tier_for("LARGE_TRANSFER") is Tier.SECURE
    assert tier_for("DISTRIBUTION") is Tier.STANDARD
    assert tier_for("FEE_COLLECTION") is Tier.STANDARD
    assert tier_for("small_transfer") is Tier.FAST
    assert tier_for("SOMETHING_NEW") is Tier.STANDARD


def test_default_tiers_use_increasing_finality() -> None:
    assert DEFAULT_TIERS[Tier.FAST].commitment == "processed"
    assert DEFAULT_TIERS[Tier.STANDARD].commitment == "confirmed"
    assert DEFAULT_TIERS[Tier.SECURE].commitment == "finalized"
    assert (
        DEFAULT_TIERS[Tier.FAST].timeout
        < DEFAULT_TIERS[Tier.STANDARD].timeout
        < DEFAULT_TIERS[Tier.SECURE].timeout
    )


def test_retry_policy_delays() -> None:
    policy = RetryPolicy(max_retries=3, base_delay=1.0, backoff_factor=2.0)

    assert [policy.delay_for(n) for n in range(3)] == [1.0, 2.0, 4.0]
    assert policy.max_total_wait() == 7.0
