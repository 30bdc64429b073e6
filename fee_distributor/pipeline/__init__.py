"""
Distribution pipeline components.

Each component receives its collaborators and an explicit config struct;
none of them reads settings or the environment.
"""

from fee_distributor.pipeline.abstract import (
    LedgerClient,
    Operation,
    SigningProvider,
    SimulationOutcome,
    SwapRouter,
    TokenAccountEnumerator,
    TokenAccountRecord,
    TokenTransfer,
)
from fee_distributor.pipeline.balance import BalanceBand, BalanceSentinel
from fee_distributor.pipeline.disbursement import DisbursementConfig, DisbursementEngine, partition
from fee_distributor.pipeline.execution import DEFAULT_TIERS, ExecutionCore, tier_for
from fee_distributor.pipeline.holders import allocate, checked_mul, take_snapshot
from fee_distributor.pipeline.swap import SwapConfig, SwapOrchestrator

__all__ = [
    "LedgerClient",
    "Operation",
    "SigningProvider",
    "SimulationOutcome",
    "SwapRouter",
    "TokenAccountEnumerator",
    "TokenAccountRecord",
    "TokenTransfer",
    "BalanceBand",
    "BalanceSentinel",
    "DisbursementConfig",
    "DisbursementEngine",
    "partition",
    "DEFAULT_TIERS",
    "ExecutionCore",
    "tier_for",
    "allocate",
    "checked_mul",
    "take_snapshot",
    "SwapConfig",
    "SwapOrchestrator",
]
