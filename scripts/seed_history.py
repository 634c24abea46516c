"""
Seed a table with legacy account history rows for rehearsing the migration.

Implements deterministic pseudo-random record generation and loads the rows
through the same table adapter the migration uses (e.g. against Azurite).
"""

from __future__ import annotations

import asyncio
import random
import sys
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import List

import typer

from history_migration.domain.models import AccountHistoryRecord, group_by_partition
from history_migration.infrastructure.table_storage import open_table

app = typer.Typer(help="Generate legacy account history rows and load them into a table.")

HISTORY_TYPES = ["Deposit", "Withdraw", "OrderClosed", "Reset"]


def _generate_records(
    rows: int, partitions: int, seed: int, start: datetime | None = None
) -> List[AccountHistoryRecord]:
    """Build `rows` legacy records spread round-robin over `partitions` accounts."""
    rng = random.Random(seed)
    start = start or datetime(2017, 1, 1, tzinfo=timezone.utc)
    accounts = [f"account-{index:03d}" for index in range(partitions)]

    records: List[AccountHistoryRecord] = []
    balances = {account: 0.0 for account in accounts}
    for i in range(rows):
        account = accounts[i % partitions]
        amount = round(rng.uniform(-500, 1_000), 2)
        balances[account] = round(balances[account] + amount, 2)
        row_key = uuid.UUID(int=rng.getrandbits(128)).hex
        records.append(
            AccountHistoryRecord(
                partition_key=account,
                row_key=row_key,
                id=row_key,
                date=start + timedelta(seconds=rng.randint(0, 365 * 24 * 3600)),
                client_id=f"client-{account}",
                amount=amount,
                balance=balances[account],
                withdraw_transfer_limit=round(rng.uniform(0, 1_000), 2),
                comment=rng.choice(["", "manual", "swap", "commission"]),
                type=rng.choice(HISTORY_TYPES),
            )
        )
    return records


async def _load(connection_string: str, table_name: str, records: List[AccountHistoryRecord]) -> int:
    async with open_table(connection_string, table_name) as table:
        await table.ensure_exists()
        for group in group_by_partition(records):
            await table.insert_or_replace(group)
    return len(records)


@app.command()
def main(
    connection_string: str = typer.Option(
        ...,
        "--connection-string",
        envvar="HISTORY_CONN_STRING",
        help="Storage account connection string.",
    ),
    table: str = typer.Option(
        "MarginTradingAccountsHistory",
        "--table",
        "-t",
        help="Table to seed.",
    ),
    rows: int = typer.Option(2_500, "--rows", "-r", help="Number of rows to generate."),
    partitions: int = typer.Option(7, "--partitions", "-p", help="Number of accounts."),
    seed: int = typer.Option(42, "--seed", help="Deterministic RNG seed."),
) -> None:
    """
    Generate legacy (unversioned) history rows and load them into a table.
    """
    start = time.perf_counter()
    typer.echo(f"Generating {rows:,} rows over {partitions} partitions (seed={seed})")
    records = _generate_records(rows, partitions, seed)
    loaded = asyncio.run(_load(connection_string, table, records))
    duration = time.perf_counter() - start
    typer.echo(f"Loaded {loaded:,} rows into {table} in {duration:.2f}s.")


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
