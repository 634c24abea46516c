"""
Infrastructure package for the account history migration.

Centralizes I/O concerns: Azure table access, row key generation and
configuration document sources. Keep this layer decoupled from the pipeline
and driver logic.
"""

from history_migration.infrastructure.row_keys import date_row_key, make_date_key_fn
from history_migration.infrastructure.table_storage import (
    TRANSACTION_LIMIT,
    AccountHistoryTable,
    open_table,
)

__all__ = [
    "AccountHistoryTable",
    "TRANSACTION_LIMIT",
    "date_row_key",
    "make_date_key_fn",
    "open_table",
]
