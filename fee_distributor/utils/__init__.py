"""
Utilities package for the fee distributor.

Exports shared helpers for logging and profiling. Keep this package free of
domain-specific logic.
"""

from fee_distributor.utils.logging import configure_logging, get_logger
from fee_distributor.utils.profiler import ProfileStats, profile_block

__all__ = [
    "configure_logging",
    "get_logger",
    "ProfileStats",
    "profile_block",
]
