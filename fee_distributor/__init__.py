"""
Fee-to-reward distributor for a fee-bearing Solana token.

Periodically harvests accumulated transfer fees, converts them into a reward
asset through a two-hop swap and distributes the proceeds to current holders
in proportion to their balances:

- Transaction execution core (simulate, submit, tiered confirmation, retry)
- Balance sentinel for the fee-collection account
- Holder snapshot and single-floor proportional allocation
- Two-hop swap orchestration
- Batched disbursement
- Scheduling / retry supervisor
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from fee_distributor.config import Settings, get_settings
from fee_distributor.domain.errors import DistributionError
from fee_distributor.domain.models import DistributionCycle, SupervisorStatus
from fee_distributor.orchestrator import DistributionPipeline, load_latest
from fee_distributor.supervisor import Supervisor, SupervisorConfig
from fee_distributor.utils.logging import configure_logging, get_logger
from fee_distributor.utils.profiler import ProfileStats, profile_block

__all__ = [
    # Version info
    "__version__",
    # Configuration
    "Settings",
    "get_settings",
    # Orchestration
    "DistributionPipeline",
    "DistributionCycle",
    "load_latest",
    "Supervisor",
    "SupervisorConfig",
    "SupervisorStatus",
    # Errors
    "DistributionError",
    # Logging
    "configure_logging",
    "get_logger",
    # Profiling
    "ProfileStats",
    "profile_block",
]
