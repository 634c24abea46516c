"""
Account History Migration - one-off rewrite of margin-trading account history.

Reads account history entities from Azure Table Storage, stamps them with
entity version 2 under chronologically ordered row keys, backs the originals up
and finally removes the superseded legacy rows:

- Paged reads with a fixed column projection
- Partition-grouped, bounded-parallel batch writes
- Running progress and throughput logging
- Operator-gated phases across the DEMO and LIVE environments
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from history_migration.config import Settings, load_settings
from history_migration.domain.models import AccountHistoryRecord
from history_migration.driver import (
    MigrationDriver,
    PhaseResult,
    available_phases,
    open_driver,
    run_phase,
)
from history_migration.infrastructure.table_storage import AccountHistoryTable, open_table
from history_migration.pipeline import MigrationPipeline
from history_migration.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "load_settings",
    # Domain
    "AccountHistoryRecord",
    # Storage
    "AccountHistoryTable",
    "open_table",
    # Migration
    "MigrationPipeline",
    "MigrationDriver",
    "PhaseResult",
    "available_phases",
    "open_driver",
    "run_phase",
    # Logging
    "configure_logging",
    "get_logger",
]
