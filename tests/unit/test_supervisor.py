from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from fee_distributor.domain.models import CycleStatus, DistributionCycle, SupervisorState
from fee_distributor.supervisor import Supervisor, SupervisorConfig

RETRY_DELAY_MINUTES = 15
RETRY_DELAY_SECONDS = RETRY_DELAY_MINUTES * 60
NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

QUIET = SupervisorConfig(
    interval_minutes=0,
    balance_check_interval_minutes=0,
    retry_delay_minutes=RETRY_DELAY_MINUTES,
    max_retries=3,
    run_on_start=False,
)


def _cycle(ok: bool) -> DistributionCycle:
    cycle = DistributionCycle(cycle_id="c", token_id="T", fee_collector="F")
    if not ok:
        cycle.fail(RuntimeError("swap hop 1 failed"))
    return cycle


class _FakeCycleRunner:
    """Returns scripted outcomes in order; the last one repeats."""

    def __init__(self, *outcomes: bool, gate: Optional[asyncio.Event] = None) -> None:
        self.outcomes = list(outcomes)
        self.gate = gate
        self.calls = 0

    async def __call__(self) -> DistributionCycle:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        index = min(self.calls, len(self.outcomes)) - 1
        outcome = self.outcomes[index]
        if isinstance(outcome, Exception):
            raise outcome
        return _cycle(outcome)


class _FakeSleep:
    """Records delays; returns at once for the first `immediate` calls, then blocks."""

    def __init__(self, immediate: int = 1_000) -> None:
        self.delays: List[float] = []
        self.immediate = immediate

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if len(self.delays) > self.immediate:
            await asyncio.Event().wait()
        await asyncio.sleep(0)


async def _spin(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _supervisor(runner, config: SupervisorConfig = QUIET, **kwargs) -> Supervisor:
    kwargs.setdefault("sleep", _FakeSleep())
    return Supervisor(runner, config, clock=lambda: NOW, **kwargs)


@pytest.mark.asyncio
async def test_successful_cycle_returns_to_idle() -> None:
    runner = _FakeCycleRunner(True)
    supervisor = _supervisor(runner)
    await supervisor.start()

    supervisor.trigger()
    status = await supervisor.wait_until_settled()
    await supervisor.stop()

    assert runner.calls == 1
    assert status.state is SupervisorState.IDLE
    assert status.run_count == 1
    assert status.last_status is CycleStatus.SUCCEEDED
    assert status.last_run_time == NOW


@pytest.mark.asyncio
async def test_rapid_triggers_run_a_single_cycle() -> None:
    gate = asyncio.Event()
    runner = _FakeCycleRunner(True, gate=gate)
    supervisor = _supervisor(runner)
    await supervisor.start()

    for _ in range(3):
        supervisor.trigger()
    await _spin()

    assert runner.calls == 1
    assert supervisor.get_status().is_processing

    gate.set()
    status = await supervisor.wait_until_settled()
    await supervisor.stop()

    assert runner.calls == 1
    assert status.run_count == 1
    assert not status.is_processing


@pytest.mark.asyncio
async def test_failed_cycle_is_retried_after_delay() -> None:
    runner = _FakeCycleRunner(False, True)
    sleep = _FakeSleep()
    supervisor = _supervisor(runner, sleep=sleep)
    await supervisor.start()

    supervisor.trigger()
    status = await supervisor.wait_until_settled()
    await supervisor.stop()

    assert runner.calls == 2
    assert sleep.delays == [RETRY_DELAY_SECONDS]
    assert status.state is SupervisorState.IDLE
    assert status.retry_count == 0
    assert status.run_count == 2
    assert status.last_status is CycleStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_retry_is_scheduled_with_next_retry_time() -> None:
    runner = _FakeCycleRunner(False)
    supervisor = _supervisor(runner, sleep=_FakeSleep(immediate=0))
    await supervisor.start()

    supervisor.trigger()
    await _spin()
    status = supervisor.get_status()
    await supervisor.stop()

    assert status.state is SupervisorState.RETRY_SCHEDULED
    assert status.retry_count == 1
    assert status.next_retry_at == NOW + timedelta(seconds=RETRY_DELAY_SECONDS)
    assert status.last_status is CycleStatus.FAILED


@pytest.mark.asyncio
async def test_exhausted_retries_halt_until_next_trigger() -> None:
    runner = _FakeCycleRunner(False)
    config = QUIET.model_copy(update={"max_retries": 2})
    supervisor = _supervisor(runner, config)
    await supervisor.start()

    supervisor.trigger()
    halted = await supervisor.wait_until_settled()

    assert runner.calls == 3
    assert halted.state is SupervisorState.HALTED
    assert halted.retry_count == 2

    runner.outcomes = [True]
    supervisor.trigger()
    recovered = await supervisor.wait_until_settled()
    await supervisor.stop()

    assert recovered.state is SupervisorState.IDLE
    assert recovered.retry_count == 0
    assert recovered.run_count == 4


@pytest.mark.asyncio
async def test_fresh_trigger_supersedes_pending_retry() -> None:
    runner = _FakeCycleRunner(False, True)
    supervisor = _supervisor(runner, sleep=_FakeSleep(immediate=0))
    await supervisor.start()

    supervisor.trigger()
    await _spin()
    assert supervisor.get_status().state is SupervisorState.RETRY_SCHEDULED

    supervisor.trigger("manual")
    status = await supervisor.wait_until_settled()
    await supervisor.stop()

    assert runner.calls == 2
    assert status.state is SupervisorState.IDLE
    assert status.next_retry_at is None


@pytest.mark.asyncio
async def test_raising_cycle_counts_as_failure() -> None:
    runner = _FakeCycleRunner(RuntimeError("rpc exploded"), True)
    supervisor = _supervisor(runner)
    await supervisor.start()

    supervisor.trigger()
    status = await supervisor.wait_until_settled()
    await supervisor.stop()

    assert runner.calls == 2
    assert status.last_status is CycleStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_zero_retries_halts_immediately() -> None:
    runner = _FakeCycleRunner(False)
    supervisor = _supervisor(runner, QUIET.model_copy(update={"max_retries": 0}))
    await supervisor.start()

    supervisor.trigger()
    status = await supervisor.wait_until_settled()
    await supervisor.stop()

    assert runner.calls == 1
    assert status.state is SupervisorState.HALTED


@pytest.mark.asyncio
async def test_balance_timer_runs_balance_check() -> None:
    checks: List[int] = []

    async def _balance_check() -> None:
        checks.append(1)

    config = QUIET.model_copy(update={"balance_check_interval_minutes": 1})
    sleep = _FakeSleep(immediate=1)
    supervisor = _supervisor(
        _FakeCycleRunner(True), config, balance_check=_balance_check, sleep=sleep
    )
    await supervisor.start()
    await _spin()
    await supervisor.stop()

    assert checks == [1]
    assert sleep.delays[0] == 60


@pytest.mark.asyncio
async def test_run_on_start_triggers_startup_cycle() -> None:
    runner = _FakeCycleRunner(True)
    supervisor = _supervisor(runner, QUIET.model_copy(update={"run_on_start": True}))

    await supervisor.start()
    status = await supervisor.wait_until_settled()
    await supervisor.stop()

    assert runner.calls == 1
    assert status.run_count == 1


@pytest.mark.asyncio
async def test_stop_lets_in_flight_cycle_finish() -> None:
    gate = asyncio.Event()
    runner = _FakeCycleRunner(True, gate=gate)
    supervisor = _supervisor(runner)
    await supervisor.start()
    supervisor.trigger()
    await _spin()

    stopping = asyncio.create_task(supervisor.stop())
    await _spin()
    assert not stopping.done()

    gate.set()
    await stopping

    status = supervisor.get_status()
    assert status.run_count == 1
    assert status.state is SupervisorState.IDLE
    assert not supervisor.running
