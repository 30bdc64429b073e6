"""
Scheduling / retry supervisor.

One supervisory asyncio task owns the scheduler state and is its only writer.
Everything else talks to it through a command queue:

- TRIGGER        periodic timer or manual request to run a cycle
- RETRY_DUE      the single scheduled retry of a failed cycle is due
- CYCLE_FINISHED a cycle task reports its outcome
- BALANCE_CHECK  the balance timer fired
- STOP           shut down

State machine:

    idle -> running -> idle
                    -> retry_scheduled -> running -> ...
                    -> halted (retries exhausted; periodic triggers continue)

A trigger that arrives while a cycle is running is skipped, not queued.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from pydantic import BaseModel, Field

from fee_distributor.domain.models import (
    CycleStatus,
    DistributionCycle,
    SupervisorState,
    SupervisorStatus,
    utcnow,
)
from fee_distributor.pipeline.execution import SleepFn
from fee_distributor.utils.logging import get_logger

log = get_logger(__name__)

CycleRunner = Callable[[], Awaitable[DistributionCycle]]
BalanceCheck = Callable[[], Awaitable[Any]]


class SupervisorConfig(BaseModel):
    interval_minutes: float = Field(30.0, ge=0, description="0 disables the periodic trigger.")
    balance_check_interval_minutes: float = Field(30.0, ge=0, description="0 disables the balance timer.")
    retry_delay_minutes: float = Field(15.0, ge=0)
    max_retries: int = Field(3, ge=0)
    run_on_start: bool = True

    model_config = {"frozen": True}


class Command(str, Enum):
    TRIGGER = "trigger"
    RETRY_DUE = "retry_due"
    CYCLE_FINISHED = "cycle_finished"
    BALANCE_CHECK = "balance_check"
    STOP = "stop"


class Supervisor:
    """
    Parameters
    ----------
    run_cycle : callable
        Coroutine function running one distribution cycle and returning its record.
    config : SupervisorConfig
        Intervals and retry budget.
    balance_check : callable | None
        Coroutine function run on the balance timer while no cycle is running.
    sleep : callable
        Awaitable sleep used by timers and the retry delay (injected in tests).
    clock : callable
        Returns the current UTC time.
    """

    def __init__(
        self,
        run_cycle: CycleRunner,
        config: SupervisorConfig,
        balance_check: Optional[BalanceCheck] = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._run_cycle = run_cycle
        self._config = config
        self._balance_check = balance_check
        self._sleep = sleep
        self._clock = clock

        self._queue: "asyncio.Queue[Tuple[Command, Any]]" = asyncio.Queue()
        self._state = SupervisorState.IDLE
        self._run_count = 0
        self._retry_count = 0
        self._last_run_time: Optional[datetime] = None
        self._last_status: Optional[CycleStatus] = None
        self._next_retry_at: Optional[datetime] = None

        self._loop_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._timers: List[asyncio.Task] = []
        self._settled = asyncio.Event()
        self._settled.set()

    # -- public API ---------------------------------------------------------------

    def get_status(self) -> SupervisorStatus:
        return SupervisorStatus(
            is_processing=self._state is SupervisorState.RUNNING,
            last_run_time=self._last_run_time,
            run_count=self._run_count,
            retry_count=self._retry_count,
            state=self._state,
            last_status=self._last_status,
            next_retry_at=self._next_retry_at,
        )

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def trigger(self, reason: str = "manual") -> None:
        """Request a cycle. Skipped by the supervisory task if one is already running."""
        self._settled.clear()
        self._queue.put_nowait((Command.TRIGGER, reason))

    async def start(self) -> None:
        if self.running:
            return
        self._loop_task = asyncio.create_task(self._loop(), name="supervisor")
        if self._config.interval_minutes > 0:
            self._timers.append(
                asyncio.create_task(
                    self._periodic(Command.TRIGGER, self._config.interval_minutes * 60),
                    name="distribution-timer",
                )
            )
        if self._balance_check is not None and self._config.balance_check_interval_minutes > 0:
            self._timers.append(
                asyncio.create_task(
                    self._periodic(
                        Command.BALANCE_CHECK, self._config.balance_check_interval_minutes * 60
                    ),
                    name="balance-timer",
                )
            )
        log.info(
            "[SUPERVISOR START]",
            extra={
                "interval_minutes": self._config.interval_minutes,
                "balance_check_interval_minutes": self._config.balance_check_interval_minutes,
                "retry_delay_minutes": self._config.retry_delay_minutes,
                "max_retries": self._config.max_retries,
            },
        )
        if self._config.run_on_start:
            self.trigger("startup")

    async def stop(self) -> None:
        """Stop timers, let an in-flight cycle finish, then stop the supervisory task."""
        for task in self._timers:
            task.cancel()
        self._timers.clear()
        if self._loop_task is None:
            return
        self._queue.put_nowait((Command.STOP, None))
        await self._loop_task
        self._loop_task = None
        log.info("[SUPERVISOR STOP]", extra={"run_count": self._run_count})

    async def wait_until_settled(self) -> SupervisorStatus:
        """Wait until no cycle is running or scheduled for retry."""
        await self._settled.wait()
        return self.get_status()

    async def run_forever(self) -> None:
        await self.start()
        try:
            assert self._loop_task is not None
            await asyncio.shield(self._loop_task)
        finally:
            await self.stop()

    # -- supervisory task -----------------------------------------------------------

    async def _periodic(self, command: Command, interval_seconds: float) -> None:
        while True:
            await self._sleep(interval_seconds)
            if command is Command.TRIGGER:
                self.trigger("schedule")
            else:
                self._queue.put_nowait((command, None))

    async def _delayed(self, command: Command, delay_seconds: float) -> None:
        await self._sleep(delay_seconds)
        self._queue.put_nowait((command, None))

    async def _execute_cycle(self) -> None:
        try:
            outcome: Any = await self._run_cycle()
        except Exception as exc:  # noqa: BLE001 - a cycle failure must never end supervision
            log.exception("[SUPERVISOR] cycle raised")
            outcome = exc
        self._queue.put_nowait((Command.CYCLE_FINISHED, outcome))

    def _set_state(self, state: SupervisorState) -> None:
        self._state = state
        if state in (SupervisorState.IDLE, SupervisorState.HALTED):
            self._settled.set()
        else:
            self._settled.clear()

    def _start_cycle(self, reason: str) -> None:
        if self._state is SupervisorState.RUNNING:
            log.warning(
                f"[SUPERVISOR] cycle already running, skipping {reason} trigger",
                extra={"reason": reason},
            )
            return
        if self._state is SupervisorState.RETRY_SCHEDULED and reason != "retry":
            # A fresh trigger supersedes the pending retry.
            self._cancel_retry()
        if self._state is SupervisorState.HALTED:
            self._retry_count = 0
        self._set_state(SupervisorState.RUNNING)
        log.info(f"[SUPERVISOR] starting cycle ({reason})", extra={"reason": reason})
        self._cycle_task = asyncio.create_task(self._execute_cycle(), name="distribution-cycle")

    def _cancel_retry(self) -> None:
        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None
        self._next_retry_at = None

    def _finish_cycle(self, outcome: Any) -> None:
        self._cycle_task = None
        self._run_count += 1
        self._last_run_time = self._clock()

        succeeded = isinstance(outcome, DistributionCycle) and outcome.succeeded
        self._last_status = CycleStatus.SUCCEEDED if succeeded else CycleStatus.FAILED
        if succeeded:
            self._retry_count = 0
            self._set_state(SupervisorState.IDLE)
            return

        reason = outcome.reason if isinstance(outcome, DistributionCycle) else str(outcome)
        if self._retry_count < self._config.max_retries:
            self._retry_count += 1
            delay = self._config.retry_delay_minutes * 60
            self._next_retry_at = self._last_run_time + timedelta(seconds=delay)
            self._set_state(SupervisorState.RETRY_SCHEDULED)
            log.warning(
                f"[SUPERVISOR] cycle failed, retry {self._retry_count}/{self._config.max_retries} "
                f"in {self._config.retry_delay_minutes} min",
                extra={"reason": reason, "retry_count": self._retry_count},
            )
            self._retry_task = asyncio.create_task(self._delayed(Command.RETRY_DUE, delay))
            return

        self._set_state(SupervisorState.HALTED)
        log.error(
            "[SUPERVISOR] retries exhausted, operator attention required",
            extra={"reason": reason, "retry_count": self._retry_count},
        )

    async def _run_balance_check(self) -> None:
        if self._state is SupervisorState.RUNNING or self._balance_check is None:
            return
        try:
            await self._balance_check()
        except Exception:  # noqa: BLE001 - the next cycle re-checks the balance
            log.exception("[SUPERVISOR] balance check failed")

    async def _loop(self) -> None:
        while True:
            command, payload = await self._queue.get()
            if command is Command.STOP:
                if self._cycle_task is not None:
                    await self._cycle_task
                    self._finish_cycle(self._drain_finished())
                self._cancel_retry()
                self._settled.set()
                return
            if command is Command.TRIGGER:
                self._start_cycle(str(payload))
            elif command is Command.RETRY_DUE:
                if self._state is not SupervisorState.RETRY_SCHEDULED:
                    continue
                self._retry_task = None
                self._next_retry_at = None
                self._start_cycle("retry")
            elif command is Command.CYCLE_FINISHED:
                self._finish_cycle(payload)
            elif command is Command.BALANCE_CHECK:
                await self._run_balance_check()

    def _drain_finished(self) -> Any:
        """Pull the outcome of the cycle that finished while stopping."""
        outcome: Any = None
        while not self._queue.empty():
            command, payload = self._queue.get_nowait()
            if command is Command.CYCLE_FINISHED:
                outcome = payload
        return outcome


__all__ = ["Command", "Supervisor", "SupervisorConfig"]
