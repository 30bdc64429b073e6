"""
Infrastructure adapters: Solana JSON-RPC ledger client, keypair signing and
the Jupiter swap-routing client.
"""

from fee_distributor.infrastructure.jupiter import JupiterClient
from fee_distributor.infrastructure.signing import KeypairSigner
from fee_distributor.infrastructure.solana_rpc import SolanaRpcClient

__all__ = ["JupiterClient", "KeypairSigner", "SolanaRpcClient"]
