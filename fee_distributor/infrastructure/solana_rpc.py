"""
Solana JSON-RPC ledger adapter.

Implements the LedgerClient and TokenAccountEnumerator interfaces on top of
raw JSON-RPC over aiohttp, with solders for keys, instructions and
transaction serialization.

Endpoints are tried in priority order; the first one that answers a health
check (version, slot and latest blockhash) is used for the whole session.
Health checks retry transient connection errors using tenacity.
"""

from __future__ import annotations

import asyncio
import base64
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from fee_distributor.domain.errors import (
    DistributionError,
    InvalidOperation,
    LedgerUnavailable,
    SubmissionError,
)
from fee_distributor.infrastructure.signing import KeypairSigner
from fee_distributor.pipeline.abstract import (
    Operation,
    SimulationOutcome,
    TokenAccountRecord,
    TokenTransfer,
)
from fee_distributor.utils.logging import get_logger

log = get_logger(__name__)

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"

PACKET_DATA_SIZE = 1232
U64_MAX = (1 << 64) - 1

# Token program instruction tags
_TRANSFER_CHECKED = 12
_CREATE_IDEMPOTENT = 1

_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}

# JSON-RPC "Invalid params" as returned for a missing token account.
_INVALID_PARAMS = -32602


class RpcMethodError(DistributionError):
    """JSON-RPC call answered with an error object."""

    def __init__(self, method: str, error: Any) -> None:
        code = error.get("code") if isinstance(error, dict) else None
        message = error.get("message") if isinstance(error, dict) else str(error)
        super().__init__(f"RPC error for {method}: {message}", method=method, code=code)
        self.method = method
        self.code = code
        self.data = error.get("data") if isinstance(error, dict) else None


def associated_token_address(owner: str, mint: str, token_program: str = TOKEN_2022_PROGRAM_ID) -> str:
    address, _bump = Pubkey.find_program_address(
        [
            bytes(Pubkey.from_string(owner)),
            bytes(Pubkey.from_string(token_program)),
            bytes(Pubkey.from_string(mint)),
        ],
        Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM_ID),
    )
    return str(address)


def transfer_checked_instruction(
    source: str,
    mint: str,
    destination: str,
    owner: str,
    amount: int,
    decimals: int,
    token_program: str = TOKEN_2022_PROGRAM_ID,
) -> Instruction:
    if not 0 < amount <= U64_MAX:
        raise InvalidOperation(f"token transfer amount {amount} outside the u64 range")
    data = bytes([_TRANSFER_CHECKED]) + amount.to_bytes(8, "little") + bytes([decimals])
    accounts = [
        AccountMeta(Pubkey.from_string(source), is_signer=False, is_writable=True),
        AccountMeta(Pubkey.from_string(mint), is_signer=False, is_writable=False),
        AccountMeta(Pubkey.from_string(destination), is_signer=False, is_writable=True),
        AccountMeta(Pubkey.from_string(owner), is_signer=True, is_writable=False),
    ]
    return Instruction(Pubkey.from_string(token_program), data, accounts)


def create_idempotent_instruction(
    payer: str,
    owner: str,
    mint: str,
    token_program: str = TOKEN_2022_PROGRAM_ID,
) -> Instruction:
    ata = associated_token_address(owner, mint, token_program)
    accounts = [
        AccountMeta(Pubkey.from_string(payer), is_signer=True, is_writable=True),
        AccountMeta(Pubkey.from_string(ata), is_signer=False, is_writable=True),
        AccountMeta(Pubkey.from_string(owner), is_signer=False, is_writable=False),
        AccountMeta(Pubkey.from_string(mint), is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(Pubkey.from_string(token_program), is_signer=False, is_writable=False),
    ]
    return Instruction(Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM_ID), bytes([_CREATE_IDEMPOTENT]), accounts)


def parse_token_accounts(result: Any) -> List[TokenAccountRecord]:
    """Turn a jsonParsed getProgramAccounts result into token-account records."""
    records: List[TokenAccountRecord] = []
    for item in result or []:
        try:
            info = item["account"]["data"]["parsed"]["info"]
            records.append(
                TokenAccountRecord(
                    owner=str(info["owner"]),
                    amount=int(info["tokenAmount"]["amount"]),
                    account=str(item.get("pubkey", "")),
                )
            )
        except (KeyError, TypeError, ValueError):
            log.debug("skipping unparsable token account", extra={"item": str(item)[:200]})
    return records


def commitment_reached(status: Optional[Dict[str, Any]], commitment: str) -> bool:
    if not status:
        return False
    reached = status.get("confirmationStatus")
    if reached is None:
        return False
    return _COMMITMENT_RANK.get(reached, -1) >= _COMMITMENT_RANK.get(commitment, 1)


class SolanaRpcClient:
    """
    Ledger client over Solana JSON-RPC.

    Parameters
    ----------
    endpoints : Sequence[str]
        RPC URLs in priority order.
    signer : KeypairSigner
        Signs every compiled transaction.
    token_program : str
        Default token program (the fee token's); also the program enumerated
        by `token_accounts`.
    request_timeout : float
        Total timeout for a single JSON-RPC request, seconds.
    poll_interval : float
        Delay between signature-status polls while confirming.
    """

    def __init__(
        self,
        endpoints: Sequence[str],
        signer: KeypairSigner,
        token_program: str = TOKEN_2022_PROGRAM_ID,
        request_timeout: float = 30.0,
        poll_interval: float = 0.5,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        urls = [u for u in endpoints if u]
        if not urls:
            raise LedgerUnavailable("no RPC endpoints configured")
        self._endpoints = urls
        self._signer = signer
        self._token_program = token_program
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._poll_interval = poll_interval
        self._session = session
        self._owns_session = session is None
        self._url: Optional[str] = None
        self._decimals: Dict[str, int] = {}

    @property
    def endpoint(self) -> Optional[str]:
        return self._url

    async def __aenter__(self) -> "SolanaRpcClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def connect(self) -> str:
        """Select the first healthy endpoint. Raises LedgerUnavailable."""
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

        for url in self._endpoints:
            log.info(f"[RPC] checking endpoint {url}")
            try:
                await self._health_check(url)
            except (aiohttp.ClientError, asyncio.TimeoutError, RpcMethodError, ValueError) as exc:
                log.warning(f"[RPC] endpoint {url} failed health check: {exc}")
                continue
            self._url = url
            log.info(f"[RPC] using endpoint {url}")
            return url

        raise LedgerUnavailable(
            f"all {len(self._endpoints)} RPC endpoint(s) failed", endpoints=len(self._endpoints)
        )

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
        reraise=True,
    )
    async def _health_check(self, url: str) -> None:
        version = await self._post(url, "getVersion", [])
        slot = await self._post(url, "getSlot", [{"commitment": "confirmed"}])
        blockhash = await self._post(url, "getLatestBlockhash", [{"commitment": "confirmed"}])
        if not version or not isinstance(slot, int) or slot <= 0:
            raise ValueError(f"unhealthy endpoint {url}: version={version} slot={slot}")
        if not (blockhash or {}).get("value", {}).get("blockhash"):
            raise ValueError(f"unhealthy endpoint {url}: no blockhash")

    async def _post(self, url: str, method: str, params: List[Any]) -> Any:
        assert self._session is not None
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        async with self._session.post(url, json=payload) as response:
            body = await response.json(content_type=None)
            if response.status >= 400:
                raise aiohttp.ClientResponseError(
                    response.request_info,
                    response.history,
                    status=response.status,
                    message=f"{method}: HTTP {response.status}",
                )
        if not isinstance(body, dict):
            raise RpcMethodError(method, f"invalid response body: {body}")
        if body.get("error"):
            raise RpcMethodError(method, body["error"])
        return body.get("result")

    async def _rpc_call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        if self._url is None:
            await self.connect()
        assert self._url is not None
        try:
            return await self._post(self._url, method, params or [])
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise LedgerUnavailable(f"{method} failed on {self._url}: {exc}", method=method) from exc

    # -- reads ----------------------------------------------------------------

    async def get_balance(self, address: str) -> int:
        result = await self._rpc_call("getBalance", [address, {"commitment": "confirmed"}])
        return int(result["value"])

    def receiving_account(self, owner: str, mint: str, token_program: Optional[str] = None) -> str:
        return associated_token_address(owner, mint, token_program or self._token_program)

    async def get_token_balance(self, owner: str, mint: str, token_program: Optional[str] = None) -> int:
        account = self.receiving_account(owner, mint, token_program)
        try:
            result = await self._rpc_call(
                "getTokenAccountBalance", [account, {"commitment": "confirmed"}]
            )
        except RpcMethodError as exc:
            if exc.code == _INVALID_PARAMS:
                return 0
            raise
        return int(result["value"]["amount"])

    async def get_mint_decimals(self, mint: str) -> int:
        if mint not in self._decimals:
            result = await self._rpc_call("getTokenSupply", [mint])
            self._decimals[mint] = int(result["value"]["decimals"])
        return self._decimals[mint]

    async def account_exists(self, address: str) -> bool:
        result = await self._rpc_call(
            "getAccountInfo", [address, {"encoding": "base64", "commitment": "confirmed"}]
        )
        return bool(result and result.get("value"))

    async def latest_checkpoint(self) -> str:
        result = await self._rpc_call("getLatestBlockhash", [{"commitment": "confirmed"}])
        blockhash = (result or {}).get("value", {}).get("blockhash")
        if not blockhash:
            raise LedgerUnavailable(f"missing blockhash in RPC response: {result}")
        return str(blockhash)

    async def token_accounts(self, token_id: str) -> List[TokenAccountRecord]:
        result = await self._rpc_call(
            "getProgramAccounts",
            [
                self._token_program,
                {
                    "encoding": "jsonParsed",
                    "commitment": "confirmed",
                    "filters": [{"memcmp": {"offset": 0, "bytes": token_id}}],
                },
            ],
        )
        return parse_token_accounts(result)

    # -- operation builders -----------------------------------------------------

    def native_transfer(self, source: str, destination: str, amount: int) -> Operation:
        if amount <= 0:
            return Operation(payer=source, description="empty native transfer")
        instruction = transfer(
            TransferParams(
                from_pubkey=Pubkey.from_string(source),
                to_pubkey=Pubkey.from_string(destination),
                lamports=amount,
            )
        )
        return Operation(
            payer=source,
            instructions=(instruction,),
            signers=(source,),
            description=f"native transfer {amount} {source} -> {destination}",
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
        program = token_program or self._token_program
        source = associated_token_address(source_owner, mint, program)
        instructions = tuple(
            transfer_checked_instruction(
                source,
                mint,
                associated_token_address(t.recipient, mint, program),
                source_owner,
                t.amount,
                decimals,
                program,
            )
            for t in transfers
        )
        fee_payer = payer or source_owner
        return Operation(
            payer=fee_payer,
            instructions=instructions,
            signers=tuple(dict.fromkeys((fee_payer, source_owner))),
            description=f"token transfer of {mint} to {len(instructions)} recipient(s)",
        )

    def create_receiving_accounts(
        self,
        payer: str,
        owners: Sequence[str],
        mint: str,
        token_program: Optional[str] = None,
    ) -> Operation:
        program = token_program or self._token_program
        return Operation(
            payer=payer,
            instructions=tuple(create_idempotent_instruction(payer, o, mint, program) for o in owners),
            signers=(payer,),
            description=f"create {len(owners)} receiving account(s) for {mint}",
        )

    def from_serialized(self, payload: bytes, payer: str, description: str = "") -> Operation:
        return Operation(payer=payer, serialized=payload, signers=(payer,), description=description)

    # -- simulation, submission, confirmation -----------------------------------

    def _compile(self, operation: Operation, blockhash: str) -> VersionedTransaction:
        if operation.serialized is not None:
            message = VersionedTransaction.from_bytes(operation.serialized).message
        else:
            message = MessageV0.try_compile(
                Pubkey.from_string(operation.payer),
                list(operation.instructions),
                [],
                Hash.from_string(blockhash),
            )
        tx = self._signer.sign(message, operation.signers or (operation.payer,))
        size = len(bytes(tx))
        if size > PACKET_DATA_SIZE:
            raise InvalidOperation(
                f"transaction is {size} bytes, limit is {PACKET_DATA_SIZE}",
                size=size,
                description=operation.description,
            )
        return tx

    async def simulate(self, operation: Operation) -> SimulationOutcome:
        tx = self._compile(operation, await self.latest_checkpoint())
        result = await self._rpc_call(
            "simulateTransaction",
            [
                base64.b64encode(bytes(tx)).decode("ascii"),
                {
                    "encoding": "base64",
                    "sigVerify": False,
                    "replaceRecentBlockhash": True,
                    "commitment": "confirmed",
                },
            ],
        )
        value = (result or {}).get("value") or {}
        return SimulationOutcome(
            err=value.get("err"),
            logs=tuple(value.get("logs") or ()),
            units_consumed=value.get("unitsConsumed"),
        )

    async def submit(self, operation: Operation) -> str:
        try:
            tx = self._compile(operation, await self.latest_checkpoint())
            signature = await self._rpc_call(
                "sendTransaction",
                [
                    base64.b64encode(bytes(tx)).decode("ascii"),
                    {"encoding": "base64", "skipPreflight": True, "maxRetries": 0},
                ],
            )
        except (RpcMethodError, LedgerUnavailable) as exc:
            raise SubmissionError(f"sendTransaction failed: {exc}") from exc
        if not isinstance(signature, str) or not signature:
            raise SubmissionError(f"sendTransaction returned no signature: {signature}")
        return signature

    async def confirm(self, signature: str, commitment: str) -> None:
        while True:
            try:
                result = await self._rpc_call(
                    "getSignatureStatuses", [[signature], {"searchTransactionHistory": False}]
                )
            except LedgerUnavailable as exc:
                log.debug(f"[RPC] status poll failed for {signature}: {exc}")
            else:
                statuses = (result or {}).get("value") or [None]
                status = statuses[0]
                if status and status.get("err") is not None:
                    raise SubmissionError(
                        f"transaction {signature} failed: {status['err']}", signature=signature
                    )
                if commitment_reached(status, commitment):
                    return
            await asyncio.sleep(self._poll_interval)


__all__ = [
    "ASSOCIATED_TOKEN_PROGRAM_ID",
    "PACKET_DATA_SIZE",
    "TOKEN_2022_PROGRAM_ID",
    "TOKEN_PROGRAM_ID",
    "RpcMethodError",
    "SolanaRpcClient",
    "associated_token_address",
    "commitment_reached",
    "create_idempotent_instruction",
    "parse_token_accounts",
    "transfer_checked_instruction",
]
