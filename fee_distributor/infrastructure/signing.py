"""
Keypair-backed signing provider.

Holds the keypairs of the roles the pipeline signs for (operating wallet and
fee-collection account) and signs compiled messages for whichever of them an
operation lists as signers.
"""

from __future__ import annotations

import json
from typing import Dict, Mapping, Sequence

import base58
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.transaction import VersionedTransaction

OPERATOR = "operator"
FEE_COLLECTOR = "fee_collector"


def parse_private_key(raw: str) -> Keypair:
    """Accept a JSON integer array (solana-keygen file format) or a base58 secret."""
    value = raw.strip()
    if not value:
        raise ValueError("private key is empty")

    if value.startswith("["):
        arr = json.loads(value)
        if not isinstance(arr, list):
            raise ValueError("private key JSON must be an integer array")
        return Keypair.from_bytes(bytes(arr))

    try:
        return Keypair.from_bytes(base58.b58decode(value))
    except ValueError as exc:
        raise ValueError(f"unsupported private key format: {exc}") from exc


class KeypairSigner:
    """Signing provider over in-memory keypairs, addressed by role."""

    def __init__(self, keypairs: Mapping[str, Keypair]) -> None:
        if OPERATOR not in keypairs:
            raise ValueError("an operator keypair is required")
        self._by_role: Dict[str, Keypair] = dict(keypairs)
        self._by_address: Dict[str, Keypair] = {str(kp.pubkey()): kp for kp in keypairs.values()}

    @classmethod
    def from_secrets(cls, operator: str, fee_collector: str = "") -> "KeypairSigner":
        keypairs = {OPERATOR: parse_private_key(operator)}
        if fee_collector.strip():
            keypairs[FEE_COLLECTOR] = parse_private_key(fee_collector)
        return cls(keypairs)

    def address_of(self, role: str) -> str:
        try:
            return str(self._by_role[role].pubkey())
        except KeyError:
            raise KeyError(f"no keypair configured for role '{role}'") from None

    def can_sign(self, address: str) -> bool:
        return address in self._by_address

    def sign(self, message: MessageV0, signers: Sequence[str]) -> VersionedTransaction:
        missing = [s for s in signers if s not in self._by_address]
        if missing:
            raise KeyError(f"cannot sign for {', '.join(missing)}")
        keypairs = [self._by_address[s] for s in dict.fromkeys(signers)]
        return VersionedTransaction(message, keypairs)


__all__ = ["FEE_COLLECTOR", "OPERATOR", "KeypairSigner", "parse_private_key"]
