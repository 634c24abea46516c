"""
Utilities package for the account history migration.

Exports shared helpers for logging and timing. Keep this package lightweight
and free of domain-specific logic.
"""

from history_migration.utils.logging import configure_logging, get_logger
from history_migration.utils.profiler import ProfileStats, Stopwatch, profile_block

__all__ = [
    "configure_logging",
    "get_logger",
    "ProfileStats",
    "Stopwatch",
    "profile_block",
]
