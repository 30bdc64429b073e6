"""
Collaborator interfaces consumed by the distribution pipeline.

The pipeline components (execution core, balance sentinel, swap orchestrator,
disbursement engine) only talk to the ledger, the swap-routing service and the
signing provider through the Protocols below. Concrete adapters live in
`fee_distributor.infrastructure`; tests substitute in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence, Tuple, runtime_checkable

from fee_distributor.domain.models import SwapQuote


@dataclass(frozen=True)
class Operation:
    """
    A ledger operation ready for simulation and submission.

    Either `instructions` (built by the ledger client) or `serialized` (an
    unsigned transaction returned by the swap-routing service) carries the
    payload. `signers` lists every address whose signature is required.
    """

    payer: str
    instructions: Tuple[Any, ...] = ()
    signers: Tuple[str, ...] = ()
    serialized: Optional[bytes] = None
    description: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.instructions and not self.serialized


@dataclass(frozen=True)
class SimulationOutcome:
    err: Any = None
    logs: Tuple[str, ...] = ()
    units_consumed: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.err is None


@dataclass(frozen=True)
class TokenAccountRecord:
    """One token account of the enumerated mint."""

    owner: str
    amount: int
    account: str = ""


@dataclass(frozen=True)
class TokenTransfer:
    recipient: str
    amount: int


@runtime_checkable
class LedgerClient(Protocol):
    """
    Ledger access: state reads, operation building, simulation, submission
    and confirmation.
    """

    async def get_balance(self, address: str) -> int:
        """Native-currency balance of `address` in the smallest unit."""
        ...

    async def get_token_balance(self, owner: str, mint: str, token_program: Optional[str] = None) -> int:
        """Balance of `owner`'s receiving account for `mint`; 0 when the account is absent."""
        ...

    async def get_mint_decimals(self, mint: str) -> int:
        ...

    def receiving_account(self, owner: str, mint: str, token_program: Optional[str] = None) -> str:
        """Deterministic receiving-account address of `owner` for `mint`."""
        ...

    async def account_exists(self, address: str) -> bool:
        ...

    async def latest_checkpoint(self) -> str:
        """Recent network checkpoint that bounds an operation's validity."""
        ...

    async def simulate(self, operation: Operation) -> SimulationOutcome:
        ...

    async def submit(self, operation: Operation) -> str:
        """Sign and send; returns the transaction identifier. Raises SubmissionError."""
        ...

    async def confirm(self, signature: str, commitment: str) -> None:
        """Return once `signature` reaches `commitment`; raise SubmissionError if it failed."""
        ...

    def native_transfer(self, source: str, destination: str, amount: int) -> Operation:
        ...

    def token_transfer(
        self,
        mint: str,
        source_owner: str,
        transfers: Sequence[TokenTransfer],
        decimals: int,
        token_program: Optional[str] = None,
        payer: Optional[str] = None,
    ) -> Operation:
        """One combined operation moving `mint` from `source_owner` to every recipient."""
        ...

    def create_receiving_accounts(
        self,
        payer: str,
        owners: Sequence[str],
        mint: str,
        token_program: Optional[str] = None,
    ) -> Operation:
        ...

    def from_serialized(self, payload: bytes, payer: str, description: str = "") -> Operation:
        ...


@runtime_checkable
class TokenAccountEnumerator(Protocol):
    async def token_accounts(self, token_id: str) -> Sequence[TokenAccountRecord]:
        """Every token account of `token_id` (zero balances may be included)."""
        ...


@runtime_checkable
class SwapRouter(Protocol):
    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> SwapQuote:
        """Best-route quote. Raises QuoteUnavailable."""
        ...

    async def get_swap_transaction(self, quote: SwapQuote, payer: str) -> bytes:
        """Unsigned, serialized swap transaction for `quote` paid by `payer`."""
        ...


@runtime_checkable
class SigningProvider(Protocol):
    def address_of(self, role: str) -> str:
        ...

    def can_sign(self, address: str) -> bool:
        ...

    def sign(self, message: Any, signers: Sequence[str]) -> Any:
        """Produce the signed transaction for `message` with the listed signers."""
        ...


__all__ = [
    "Operation",
    "SimulationOutcome",
    "TokenAccountRecord",
    "TokenTransfer",
    "LedgerClient",
    "TokenAccountEnumerator",
    "SwapRouter",
    "SigningProvider",
]
