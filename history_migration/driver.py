"""
Migration driver: runs the migration phases for one environment.

Phases (each idempotent at the row level, each timed and logged once):

- cleanup:    delete version 2 rows from the primary table, undoing a partial
              earlier run so convert can start from scratch;
- convert:    copy every legacy row into the primary table as a version 2 row
              under a chronologically ordered key, and back it up unchanged;
- remove_old: delete the legacy rows from the primary table. Only safe after
              convert has finished for every row.

Usage:
    async with open_driver("DEMO", conn_str, settings) as driver:
        await driver.convert()
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import (
    AsyncIterable,
    AsyncIterator,
    List,
    Optional,
    Sequence,
    TypedDict,
)

from history_migration.config import Settings
from history_migration.domain.errors import PhaseFailedError
from history_migration.domain.models import (
    CURRENT_ENTITY_VERSION,
    AccountHistoryRecord,
    is_current_version,
    is_legacy_version,
)
from history_migration.infrastructure.row_keys import make_date_key_fn
from history_migration.infrastructure.table_storage import AccountHistoryTable, open_table
from history_migration.pipeline import (
    DEFAULT_MAX_PARALLELISM,
    DEFAULT_PROGRESS_STEP,
    GroupOperation,
    MigrationPipeline,
    Predicate,
)
from history_migration.utils.logging import get_logger
from history_migration.utils.profiler import Stopwatch, profile_block

CURRENT_VERSION_FILTER = f"EntityVersion eq {CURRENT_ENTITY_VERSION}"

PHASES = ("cleanup", "convert", "remove_old")

log = get_logger(__name__)


class PhaseResult(TypedDict, total=False):
    """
    Outcome of one phase for one environment.
    """

    env: str
    phase: str
    rows: int
    duration_seconds: float
    throughput_rows_per_min: float
    peak_rss_bytes: Optional[int]
    error: Optional[str]


class MigrationDriver:
    """
    Runs the migration phases against one environment's tables.

    Parameters
    ----------
    env_name : str
        Environment label used in logs (e.g. "DEMO", "LIVE").
    primary : AccountHistoryTable
        The account history table being migrated in place.
    backup : AccountHistoryTable
        Receives an unchanged copy of every converted legacy row.
    """

    def __init__(
        self,
        env_name: str,
        primary: AccountHistoryTable,
        backup: AccountHistoryTable,
        *,
        max_parallelism: int = DEFAULT_MAX_PARALLELISM,
        progress_step: int = DEFAULT_PROGRESS_STEP,
    ) -> None:
        self.env_name = env_name
        self.primary = primary
        self.backup = backup
        self.max_parallelism = max_parallelism
        self.progress_step = progress_step
        self._stopwatch = Stopwatch()

    async def cleanup(self) -> PhaseResult:
        """Delete rows already stamped with the current version from the primary table."""
        return await self._run_phase(
            "cleanup",
            self.primary.pages(query_filter=CURRENT_VERSION_FILTER),
            self.primary.delete,
            is_current_version,
        )

    async def convert(self) -> PhaseResult:
        """Write a current-version copy of every legacy row, plus a backup copy."""
        return await self._run_phase(
            "convert",
            self.primary.pages(),
            self._convert_group,
            is_legacy_version,
        )

    async def remove_old(self) -> PhaseResult:
        """Delete the legacy rows from the primary table."""
        return await self._run_phase(
            "remove_old",
            self.primary.pages(),
            self.primary.delete,
            is_legacy_version,
        )

    async def _convert_group(self, group: Sequence[AccountHistoryRecord]) -> None:
        converted = [record.with_version(CURRENT_ENTITY_VERSION) for record in group]
        key_fn = make_date_key_fn(len(converted), self.primary.key_retry_attempts)
        outcomes = await asyncio.gather(
            self.primary.insert_with_generated_key(converted, key_fn),
            self.backup.insert_or_replace(group),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    async def _run_phase(
        self,
        phase: str,
        pages: AsyncIterable[Sequence[AccountHistoryRecord]],
        operation: GroupOperation,
        predicate: Predicate,
    ) -> PhaseResult:
        title = phase.replace("_", " ").capitalize()
        pipeline = MigrationPipeline(
            operation,
            name=self.env_name,
            predicate=predicate,
            max_parallelism=self.max_parallelism,
            progress_step=self.progress_step,
            stopwatch=self._stopwatch,
        )
        log.info(
            f"{self.env_name}: {title} started",
            extra={"env": self.env_name, "phase": phase, "table": self.primary.name},
        )
        with profile_block(f"{self.env_name}:{phase}") as stats:
            try:
                rows = await pipeline.run(pages)
            except Exception:
                log.error(
                    f"{self.env_name}: {title} failed after {pipeline.completed} rows",
                    extra={"env": self.env_name, "phase": phase, "rows": pipeline.completed},
                )
                raise

        log.info(
            f"{self.env_name}: {title} finished. Rows: {rows}; elapsed: {stats.elapsed}",
            extra={"env": self.env_name, "phase": phase, "rows": rows},
        )
        return PhaseResult(
            env=self.env_name,
            phase=phase,
            rows=rows,
            duration_seconds=round(stats.duration_seconds, 2),
            throughput_rows_per_min=round(
                rows / (stats.duration_seconds / 60.0) if stats.duration_seconds else 0.0, 2
            ),
            peak_rss_bytes=stats.peak_rss_bytes,
            error=None,
        )


@contextlib.asynccontextmanager
async def open_driver(
    env_name: str,
    connection_string: str,
    settings: Settings,
) -> AsyncIterator[MigrationDriver]:
    """Open the environment's tables, make sure the backup table exists, and close them after."""
    primary = open_table(
        connection_string,
        settings.primary_table,
        page_size=settings.page_size,
        key_retry_attempts=settings.key_retry_attempts,
    )
    backup = open_table(
        connection_string,
        settings.backup_table,
        page_size=settings.page_size,
        key_retry_attempts=settings.key_retry_attempts,
    )
    async with primary, backup:
        await backup.ensure_exists()
        yield MigrationDriver(
            env_name,
            primary,
            backup,
            max_parallelism=settings.max_parallelism,
            progress_step=settings.progress_step,
        )


def available_phases() -> List[str]:
    """List phase names in execution order."""
    return list(PHASES)


async def run_phase(drivers: Sequence[MigrationDriver], phase: str) -> List[PhaseResult]:
    """
    Run `phase` for every driver concurrently.

    All environments run to completion; afterwards the first failure, if any,
    is raised.
    """
    if phase not in PHASES:
        raise ValueError(f"Unknown phase '{phase}'. Available: {', '.join(PHASES)}")

    outcomes = await asyncio.gather(
        *(getattr(driver, phase)() for driver in drivers),
        return_exceptions=True,
    )
    results: List[PhaseResult] = []
    first_error: Optional[BaseException] = None
    for driver, outcome in zip(drivers, outcomes):
        if isinstance(outcome, BaseException):
            first_error = first_error or outcome
            results.append(PhaseResult(env=driver.env_name, phase=phase, rows=0, error=str(outcome)))
        else:
            results.append(outcome)
    if first_error is not None:
        raise PhaseFailedError(phase, results) from first_error
    return results


__all__ = [
    "MigrationDriver",
    "PhaseFailedError",
    "PhaseResult",
    "available_phases",
    "open_driver",
    "run_phase",
]
