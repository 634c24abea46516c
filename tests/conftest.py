"""
Pytest configuration for the account history migration.

Provides an in-memory stand-in for `azure.data.tables.aio.TableClient` and
fixtures for:
- Tables wrapped in the real `AccountHistoryTable` adapter
- Deterministic legacy history rows
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import pytest
from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
)

from history_migration.domain.models import AccountHistoryRecord
from history_migration.infrastructure.table_storage import AccountHistoryTable
from scripts.seed_history import _generate_records

Key = Tuple[str, str]

_EQ_FILTER = re.compile(r"^\s*(\w+)\s+eq\s+(\d+)\s*$")


class _FakePage:
    def __init__(self, entities: List[Dict[str, Any]]) -> None:
        self._entities = entities

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for entity in self._entities:
            yield entity


class _FakePaged:
    """Mimics AsyncItemPaged.by_page(): pages continue after the last key returned."""

    def __init__(
        self,
        table: "FakeTableClient",
        query_filter: Optional[str],
        select: Optional[List[str]],
        results_per_page: int,
    ) -> None:
        self._table = table
        self._match = _compile_filter(query_filter)
        self._select = select
        self._per_page = results_per_page

    def by_page(self, continuation_token: Optional[Key] = None):
        return self._pages(continuation_token)

    async def _pages(self, cursor: Optional[Key]):
        while True:
            await asyncio.sleep(0)
            keys = sorted(k for k in self._table.rows if cursor is None or k > cursor)
            page: List[Dict[str, Any]] = []
            for key in keys:
                entity = self._table.rows[key]
                if self._match(entity):
                    page.append(self._project(entity))
                    cursor = key
                if len(page) == self._per_page:
                    break
            self._table.pages_served += 1
            yield _FakePage(page)
            if len(page) < self._per_page:
                return

    def _project(self, entity: Dict[str, Any]) -> Dict[str, Any]:
        if not self._select:
            return dict(entity)
        return {name: entity[name] for name in self._select if name in entity}


def _compile_filter(query_filter: Optional[str]) -> Callable[[Dict[str, Any]], bool]:
    if not query_filter:
        return lambda entity: True
    match = _EQ_FILTER.match(query_filter)
    if not match:
        raise ValueError(f"Fake table only understands '<prop> eq <int>', got {query_filter!r}")
    prop, value = match.group(1), int(match.group(2))
    return lambda entity: entity.get(prop) == value


class FakeTableClient:
    """
    In-memory table with the subset of the async TableClient API the adapter uses.

    `fail_partitions` makes every transaction touching those partitions fail;
    `taken_keys` pre-reserves row keys so creates conflict.
    """

    def __init__(self, table_name: str, exists: bool = True) -> None:
        self.table_name = table_name
        self.exists = exists
        self.closed = False
        self.rows: Dict[Key, Dict[str, Any]] = {}
        self.transactions: List[List[Tuple[Any, ...]]] = []
        self.pages_served = 0
        self.fail_partitions: Set[str] = set()
        self.taken_keys: Set[Key] = set()
        self.in_flight = 0
        self.max_in_flight = 0

    # Reads

    def query_entities(self, query_filter: str, *, select=None, results_per_page=1000, **kwargs):
        return _FakePaged(self, query_filter, select, results_per_page)

    def list_entities(self, *, select=None, results_per_page=1000, **kwargs):
        return _FakePaged(self, None, select, results_per_page)

    # Writes

    async def submit_transaction(self, operations: Iterable[Tuple[Any, ...]]) -> List[Dict[str, Any]]:
        operations = list(operations)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            self._validate(operations)
            staged = dict(self.rows)
            for op in operations:
                kind, entity = op[0], op[1]
                key = (entity["PartitionKey"], entity["RowKey"])
                if kind == "create":
                    if key in staged or key in self.taken_keys:
                        raise ResourceExistsError(f"EntityAlreadyExists: {key}")
                    staged[key] = dict(entity)
                elif kind == "upsert":
                    staged[key] = dict(entity)
                elif kind == "delete":
                    if key not in staged:
                        raise ResourceNotFoundError(f"ResourceNotFound: {key}")
                    del staged[key]
                else:
                    raise ValueError(f"Unsupported operation {kind}")
            self.rows = staged
            self.transactions.append(operations)
            return [{} for _ in operations]
        finally:
            self.in_flight -= 1

    def _validate(self, operations: List[Tuple[Any, ...]]) -> None:
        if not self.exists:
            raise ResourceNotFoundError(f"TableNotFound: {self.table_name}")
        if not operations:
            raise ValueError("Empty transaction")
        if len(operations) > 100:
            raise ValueError(f"Transaction too large: {len(operations)}")
        partitions = {op[1]["PartitionKey"] for op in operations}
        if len(partitions) != 1:
            raise ValueError(f"Transaction spans partitions {partitions}")
        if partitions & self.fail_partitions:
            raise HttpResponseError(f"Injected failure for partition {partitions}")

    # Lifecycle

    async def create_table(self) -> None:
        if self.exists:
            raise ResourceExistsError(f"TableAlreadyExists: {self.table_name}")
        self.exists = True

    async def close(self) -> None:
        self.closed = True

    # Helpers for assertions

    def records(self) -> List[AccountHistoryRecord]:
        return [AccountHistoryRecord.from_entity(entity) for entity in self.rows.values()]

    def prime(self, records: Iterable[AccountHistoryRecord]) -> None:
        for record in records:
            self.rows[(record.partition_key, record.row_key)] = record.to_entity()


@pytest.fixture
def make_table() -> Callable[..., Tuple[AccountHistoryTable, FakeTableClient]]:
    """
    Factory returning `(adapter, fake_client)` pairs.
    """

    def _make(
        name: str = "MarginTradingAccountsHistory",
        page_size: int = 1000,
        exists: bool = True,
        key_retry_attempts: int = 5,
    ) -> Tuple[AccountHistoryTable, FakeTableClient]:
        client = FakeTableClient(name, exists=exists)
        table = AccountHistoryTable(
            client, page_size=page_size, key_retry_attempts=key_retry_attempts
        )
        return table, client

    return _make


@pytest.fixture
def legacy_records() -> List[AccountHistoryRecord]:
    """2,500 unversioned rows spread over 7 partitions."""
    return _generate_records(rows=2_500, partitions=7, seed=42)


async def pages_of(records: List[AccountHistoryRecord], page_size: int):
    """Async source yielding `records` in pages of `page_size`."""
    for offset in range(0, len(records), page_size):
        await asyncio.sleep(0)
        yield records[offset : offset + page_size]


@pytest.fixture
def page_source():
    return pages_of
