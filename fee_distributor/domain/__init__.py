"""
Domain package for the fee distributor.

Exports the domain models and the error taxonomy shared by the pipeline,
the supervisor and the adapters.
"""

from fee_distributor.domain.errors import DistributionError
from fee_distributor.domain.models import (
    Allocation,
    AllocationPlan,
    DistributionCycle,
    HolderRecord,
    HolderSnapshot,
    RetryPolicy,
    SupervisorStatus,
)

__all__ = [
    "Allocation",
    "AllocationPlan",
    "DistributionCycle",
    "DistributionError",
    "HolderRecord",
    "HolderSnapshot",
    "RetryPolicy",
    "SupervisorStatus",
]
