"""
Domain package for the account history migration.

Exports the record model, its version rules and the error taxonomy. Keep this
package free of storage and I/O concerns.
"""

from history_migration.domain.errors import (
    ConfigFormatError,
    ConfigurationError,
    MigrationError,
    UnsupportedEntityVersionError,
)
from history_migration.domain.models import (
    COLUMN_NAMES,
    CURRENT_ENTITY_VERSION,
    AccountHistoryRecord,
    group_by_partition,
    is_current_version,
    is_legacy_version,
)

__all__ = [
    "AccountHistoryRecord",
    "COLUMN_NAMES",
    "CURRENT_ENTITY_VERSION",
    "group_by_partition",
    "is_current_version",
    "is_legacy_version",
    "ConfigFormatError",
    "ConfigurationError",
    "MigrationError",
    "UnsupportedEntityVersionError",
]
