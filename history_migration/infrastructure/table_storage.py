"""
Azure Table Storage access for account history entities.

`AccountHistoryTable` wraps an async `TableClient` and exposes the handful of
operations the migration needs: paged reads with a fixed projection, batched
upsert/insert/delete, and batched insert with generated row keys.

Batches must share one partition key: the service only runs entity group
transactions inside a single partition, and at most 100 operations each.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, List, Optional, Sequence, Tuple

from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ServiceRequestError,
)
from azure.data.tables import UpdateMode
from azure.data.tables.aio import TableClient
from tenacity import (
    AsyncRetrying,
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from history_migration.domain.models import COLUMN_NAMES, AccountHistoryRecord
from history_migration.infrastructure.row_keys import KeyFn
from history_migration.utils.logging import get_logger

TRANSACTION_LIMIT = 100

log = get_logger(__name__)

Operation = Tuple[Any, ...]


def _is_key_conflict(exc: BaseException) -> bool:
    """True when a create failed because the row key is already taken."""
    if isinstance(exc, ResourceExistsError):
        return True
    return isinstance(exc, HttpResponseError) and getattr(exc, "status_code", None) == 409


def _check_single_partition(batch: Sequence[AccountHistoryRecord]) -> None:
    partitions = {record.partition_key for record in batch}
    if len(partitions) > 1:
        raise ValueError(
            f"Batch spans {len(partitions)} partitions; expected one: {sorted(partitions)}"
        )


class AccountHistoryTable:
    """
    One account history table.

    Parameters
    ----------
    client : TableClient
        Async table client bound to the table.
    page_size : int
        Entities requested per page on reads.
    key_retry_attempts : int
        Attempts per transaction in `insert_with_generated_key` before a row
        key conflict is surfaced.
    """

    def __init__(
        self,
        client: TableClient,
        page_size: int = 1000,
        key_retry_attempts: int = 5,
    ) -> None:
        self._client = client
        self.page_size = page_size
        self.key_retry_attempts = key_retry_attempts

    @property
    def name(self) -> str:
        return self._client.table_name

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(ServiceRequestError),
        reraise=True,
    )
    async def ensure_exists(self) -> None:
        """Create the table unless it is already there."""
        try:
            await self._client.create_table()
            log.info(f"Created table {self.name}", extra={"table": self.name})
        except ResourceExistsError:
            pass

    async def pages(
        self,
        query_filter: Optional[str] = None,
        select: Sequence[str] = COLUMN_NAMES,
    ) -> AsyncIterator[List[AccountHistoryRecord]]:
        """
        Yield the table content page by page.

        The continuation token is carried by the SDK's page iterator; reading
        stops when the service reports no further pages or returns an empty one.
        Re-issue the call to start over.
        """
        if query_filter:
            paged = self._client.query_entities(
                query_filter, select=list(select), results_per_page=self.page_size
            )
        else:
            paged = self._client.list_entities(
                select=list(select), results_per_page=self.page_size
            )

        async for page in paged.by_page():
            records = [AccountHistoryRecord.from_entity(entity) async for entity in page]
            if not records:
                break
            yield records

    async def insert_or_replace(self, batch: Sequence[AccountHistoryRecord]) -> None:
        await self._submit_chunked(
            [("upsert", record.to_entity(), {"mode": UpdateMode.REPLACE}) for record in batch],
            batch,
        )

    async def insert(self, batch: Sequence[AccountHistoryRecord]) -> None:
        await self._submit_chunked([("create", record.to_entity()) for record in batch], batch)

    async def delete(self, batch: Sequence[AccountHistoryRecord]) -> None:
        await self._submit_chunked(
            [
                ("delete", {"PartitionKey": record.partition_key, "RowKey": record.row_key})
                for record in batch
            ],
            batch,
        )

    async def insert_with_generated_key(
        self,
        batch: Sequence[AccountHistoryRecord],
        key_fn: KeyFn,
    ) -> List[AccountHistoryRecord]:
        """
        Insert `batch` under row keys produced by `key_fn(record, retry_index, item_index)`.

        Item indexes run across the whole batch, so transactions of one batch
        never compete for a key. A transaction rejected with a key conflict is
        retried with the next retry index; any other failure is raised as is.

        Returns
        -------
        List[AccountHistoryRecord]
            The records as written, carrying their generated row keys.
        """
        _check_single_partition(batch)
        written: List[AccountHistoryRecord] = []
        for offset in range(0, len(batch), TRANSACTION_LIMIT):
            chunk = batch[offset : offset + TRANSACTION_LIMIT]
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.key_retry_attempts),
                retry=retry_if_exception(_is_key_conflict),
                reraise=True,
            ):
                with attempt:
                    retry_index = attempt.retry_state.attempt_number - 1
                    if retry_index:
                        log.warning(
                            f"Row key conflict in {self.name}, retry {retry_index}",
                            extra={"table": self.name, "retry": retry_index},
                        )
                    keyed = [
                        record.with_row_key(key_fn(record, retry_index, offset + index))
                        for index, record in enumerate(chunk)
                    ]
                    await self._client.submit_transaction(
                        [("create", record.to_entity()) for record in keyed]
                    )
            written.extend(keyed)
        return written

    async def _submit_chunked(
        self,
        operations: List[Operation],
        batch: Sequence[AccountHistoryRecord],
    ) -> None:
        _check_single_partition(batch)
        for offset in range(0, len(operations), TRANSACTION_LIMIT):
            await self._client.submit_transaction(operations[offset : offset + TRANSACTION_LIMIT])

    async def close(self) -> None:
        await self._client.close()

    async def __aenter__(self) -> "AccountHistoryTable":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def open_table(
    connection_string: str,
    table_name: str,
    page_size: int = 1000,
    key_retry_attempts: int = 5,
) -> AccountHistoryTable:
    """
    Open an account history table from a storage connection string.

    Example
    -------
        async with open_table(conn_str, "MarginTradingAccountsHistory") as table:
            async for page in table.pages():
                ...
    """
    client = TableClient.from_connection_string(connection_string, table_name=table_name)
    return AccountHistoryTable(client, page_size=page_size, key_retry_attempts=key_retry_attempts)


__all__ = ["AccountHistoryTable", "TRANSACTION_LIMIT", "open_table"]
