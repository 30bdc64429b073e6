"""
Pytest configuration for the fee distributor.

Provides in-memory fakes for every external collaborator:
- FakeLedger: balances, receiving accounts, simulation, submission, confirmation
- FakeEnumerator: token-account enumeration
- FakeSwapRouter: quotes and serialized swap transactions
plus a recording sleep so retry backoff can be asserted without timers.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

import pytest

from fee_distributor.domain.errors import QuoteUnavailable, SubmissionError
from fee_distributor.domain.models import RetryPolicy, SwapQuote
from fee_distributor.pipeline.abstract import (
    Operation,
    SimulationOutcome,
    TokenAccountRecord,
    TokenTransfer,
)
from fee_distributor.pipeline.swap import NATIVE_MINT

OPERATOR = "Operator1111"
FEE_COLLECTOR = "FeeCollector1111"
FEE_MINT = "FeeMint1111"
REWARD_MINT = "RewardMint1111"


class RecordingSleep:
    """Awaitable sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class FakeLedger:
    def __init__(self) -> None:
        self.native: Dict[str, int] = defaultdict(int)
        self.tokens: Dict[Tuple[str, str], int] = defaultdict(int)
        self.accounts: Set[str] = set()
        self.decimals: Dict[str, int] = defaultdict(lambda: 6)
        self.serialized_effects: Dict[bytes, List[Tuple[Any, ...]]] = {}

        self.simulation_error: Any = None
        self.simulation_fails_when: Optional[Callable[[Operation], bool]] = None
        self.submit_failures = 0
        self.hanging_confirmations = 0
        self.fail_when: Optional[Callable[[Operation], bool]] = None

        self.simulate_calls = 0
        self.submitted: List[Operation] = []
        self.confirmed: List[Tuple[str, str]] = []
        self._sig = itertools.count(1)

    # -- reads ----------------------------------------------------------------

    async def get_balance(self, address: str) -> int:
        return self.native[address]

    async def get_token_balance(self, owner: str, mint: str, token_program: Optional[str] = None) -> int:
        if mint == NATIVE_MINT:
            return self.native[owner]
        return self.tokens[(owner, mint)]

    async def get_mint_decimals(self, mint: str) -> int:
        return self.decimals[mint]

    def receiving_account(self, owner: str, mint: str, token_program: Optional[str] = None) -> str:
        return f"{owner}:{mint}"

    async def account_exists(self, address: str) -> bool:
        return address in self.accounts

    async def latest_checkpoint(self) -> str:
        return "checkpoint"

    # -- builders ---------------------------------------------------------------

    def native_transfer(self, source: str, destination: str, amount: int) -> Operation:
        return Operation(
            payer=source,
            instructions=(("native", source, destination, amount),),
            signers=(source,),
        )

    def token_transfer(
        self,
        mint: str,
        source_owner: str,
        transfers: Sequence[TokenTransfer],
        decimals: int,
        token_program: Optional[str] = None,
        payer: Optional[str] = None,
    ) -> Operation:
        return Operation(
            payer=payer or source_owner,
            instructions=tuple(("token", mint, source_owner, t.recipient, t.amount) for t in transfers),
            signers=(source_owner,),
        )

    def create_receiving_accounts(
        self,
        payer: str,
        owners: Sequence[str],
        mint: str,
        token_program: Optional[str] = None,
    ) -> Operation:
        return Operation(
            payer=payer,
            instructions=tuple(("create", owner, mint) for owner in owners),
            signers=(payer,),
        )

    def from_serialized(self, payload: bytes, payer: str, description: str = "") -> Operation:
        return Operation(payer=payer, serialized=payload, signers=(payer,), description=description)

    # -- execution --------------------------------------------------------------

    async def simulate(self, operation: Operation) -> SimulationOutcome:
        self.simulate_calls += 1
        if self.simulation_error is not None and (
            self.simulation_fails_when is None or self.simulation_fails_when(operation)
        ):
            return SimulationOutcome(err=self.simulation_error, logs=("Program failed",))
        return SimulationOutcome()

    async def submit(self, operation: Operation) -> str:
        self.submitted.append(operation)
        if self.submit_failures > 0:
            self.submit_failures -= 1
            raise SubmissionError("node rejected transaction")
        if self.fail_when is not None and self.fail_when(operation):
            raise SubmissionError("transaction failed on chain")
        effects = (
            self.serialized_effects[operation.serialized]
            if operation.serialized is not None
            else list(operation.instructions)
        )
        for effect in effects:
            self._apply(effect)
        return f"sig{next(self._sig)}"

    async def confirm(self, signature: str, commitment: str) -> None:
        if self.hanging_confirmations > 0:
            self.hanging_confirmations -= 1
            await asyncio.Event().wait()
        self.confirmed.append((signature, commitment))

    def _move(self, mint: str, source: str, destination: Optional[str], amount: int) -> None:
        book: Dict[Any, int]
        if mint == NATIVE_MINT:
            src_key, dst_key, book = source, destination, self.native
        else:
            src_key, dst_key, book = (source, mint), (destination, mint), self.tokens
        if source:
            if book[src_key] < amount:
                raise SubmissionError(f"insufficient funds in {source}")
            book[src_key] -= amount
        if destination:
            book[dst_key] += amount

    def _apply(self, effect: Tuple[Any, ...]) -> None:
        kind = effect[0]
        if kind == "native":
            _, source, destination, amount = effect
            self._move(NATIVE_MINT, source, destination, amount)
        elif kind == "token":
            _, mint, source, recipient, amount = effect
            self._move(mint, source, recipient, amount)
        elif kind == "create":
            _, owner, mint = effect
            self.accounts.add(self.receiving_account(owner, mint))
        elif kind == "swap":
            _, payer, in_mint, in_amount, out_mint, out_amount = effect
            self._move(in_mint, payer, None, in_amount)
            self._move(out_mint, "", payer, out_amount)


class FakeEnumerator:
    def __init__(self, records: Sequence[TokenAccountRecord] = ()) -> None:
        self.records = list(records)

    async def token_accounts(self, token_id: str) -> List[TokenAccountRecord]:
        return list(self.records)


class FakeSwapRouter:
    """Quotes at a fixed rate per (input, output) pair; swaps move balances on the FakeLedger."""

    def __init__(self, ledger: FakeLedger, rates: Optional[Dict[Tuple[str, str], float]] = None) -> None:
        self.ledger = ledger
        self.rates = rates or {}
        self.price_impact_pct = 0.1
        self.slippage_echo: Optional[int] = None
        self.quote_failures = 0
        self.quote_calls: List[Tuple[str, str, int, int]] = []
        self._n = itertools.count(1)

    async def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> SwapQuote:
        self.quote_calls.append((input_mint, output_mint, amount, slippage_bps))
        if self.quote_failures > 0:
            self.quote_failures -= 1
            raise QuoteUnavailable("no route")
        out = int(amount * self.rates.get((input_mint, output_mint), 1.0))
        bps = self.slippage_echo if self.slippage_echo is not None else slippage_bps
        return SwapQuote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=amount,
            out_amount=out,
            min_out_amount=out * (10_000 - bps) // 10_000,
            slippage_bps=bps,
            price_impact_pct=self.price_impact_pct,
            route_labels=("Raydium", "Orca"),
        )

    async def get_swap_transaction(self, quote: SwapQuote, payer: str) -> bytes:
        payload = f"swap-{next(self._n)}".encode()
        self.ledger.serialized_effects[payload] = [
            ("swap", payer, quote.input_mint, quote.in_amount, quote.output_mint, quote.min_out_amount)
        ]
        return payload


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_retries=3, base_delay=1.0, backoff_factor=2.0, timeout=5.0)
