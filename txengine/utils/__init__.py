"""
Utilities package for txengine.

Exports shared helpers for logging and profiling.
Keep this package lightweight and free of engine logic.
"""

from txengine.utils.logging import configure_logging, get_logger
from txengine.utils.profiler import ProfileStats, profile_block

__all__ = [
    "configure_logging",
    "get_logger",
    "ProfileStats",
    "profile_block",
]
