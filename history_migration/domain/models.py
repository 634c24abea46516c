"""
Domain models for the account history migration.

`AccountHistoryRecord` mirrors one row of the margin-trading account history
table. Rows written before the migration carry no `EntityVersion` (or 1) and
use the history id as their row key; version 2 rows keep the id in an explicit
`Id` column and use a chronologically ordered row key instead.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from history_migration.domain.errors import UnsupportedEntityVersionError

LEGACY_ENTITY_VERSION = 1
CURRENT_ENTITY_VERSION = 2
SUPPORTED_ENTITY_VERSIONS: Tuple[int, ...] = (LEGACY_ENTITY_VERSION, CURRENT_ENTITY_VERSION)

# Projection used for every table query. Bump together with CURRENT_ENTITY_VERSION.
COLUMN_NAMES: Tuple[str, ...] = (
    "PartitionKey",
    "RowKey",
    "Id",
    "Date",
    "ClientId",
    "Amount",
    "Balance",
    "WithdrawTransferLimit",
    "Comment",
    "Type",
    "EntityVersion",
)


class AccountHistoryRecord(BaseModel):
    """
    Representation of a single account history entity.
    """

    partition_key: str = Field(..., alias="PartitionKey", description="Table partition key.")
    row_key: str = Field(..., alias="RowKey", description="Table row key.")
    id: str = Field(..., alias="Id", description="History entry identity.")
    date: datetime = Field(..., alias="Date", description="When the entry happened.")
    client_id: Optional[str] = Field(None, alias="ClientId")
    amount: float = Field(0.0, alias="Amount")
    balance: float = Field(0.0, alias="Balance")
    withdraw_transfer_limit: float = Field(0.0, alias="WithdrawTransferLimit")
    comment: Optional[str] = Field(None, alias="Comment")
    type: Optional[str] = Field(None, alias="Type")
    entity_version: Optional[int] = Field(None, alias="EntityVersion")

    model_config = {
        "frozen": True,
        "populate_by_name": True,
        "arbitrary_types_allowed": False,
    }

    @classmethod
    def from_entity(cls, entity: Mapping[str, Any]) -> "AccountHistoryRecord":
        """
        Build a record from a table entity, resolving its identity by version.

        Raises
        ------
        UnsupportedEntityVersionError
            If the entity carries a version other than absent, 1 or 2.
        """
        values = {name: entity[name] for name in COLUMN_NAMES if entity.get(name) is not None}
        version = values.get("EntityVersion")
        if version is not None and version not in SUPPORTED_ENTITY_VERSIONS:
            raise UnsupportedEntityVersionError(version)
        if version is None or version == LEGACY_ENTITY_VERSION:
            values["Id"] = entity["RowKey"]
        return cls.model_validate(values)

    def to_entity(self) -> Dict[str, Any]:
        """Render the record as a table entity, omitting empty properties."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def with_version(self, version: int) -> "AccountHistoryRecord":
        """Return a copy stamped with schema `version`."""
        return self.model_copy(update={"entity_version": version})

    def with_row_key(self, row_key: str) -> "AccountHistoryRecord":
        """Return a copy stored under `row_key`."""
        return self.model_copy(update={"row_key": row_key})

    @property
    def is_current_version(self) -> bool:
        return self.entity_version == CURRENT_ENTITY_VERSION


def is_current_version(record: AccountHistoryRecord) -> bool:
    """Predicate: record already uses the new layout."""
    return record.is_current_version


def is_legacy_version(record: AccountHistoryRecord) -> bool:
    """Predicate: record still needs to be migrated."""
    return not record.is_current_version


def group_by_partition(
    records: Iterable[AccountHistoryRecord],
) -> List[List[AccountHistoryRecord]]:
    """
    Split records into partition groups.

    Partitions appear in first-seen order and records keep their order within
    a partition.
    """
    groups: Dict[str, List[AccountHistoryRecord]] = {}
    for record in records:
        groups.setdefault(record.partition_key, []).append(record)
    return list(groups.values())


__all__ = [
    "AccountHistoryRecord",
    "COLUMN_NAMES",
    "CURRENT_ENTITY_VERSION",
    "LEGACY_ENTITY_VERSION",
    "SUPPORTED_ENTITY_VERSIONS",
    "group_by_partition",
    "is_current_version",
    "is_legacy_version",
]
