"""
Bounded-concurrency migration pipeline.

Pages of records flow through three stages:

1. fan-out: each page is filtered by a predicate and split into partition
   groups, which are handed to a bounded work queue. The next page is only
   read once the queue has room, so reading never runs ahead of the writers;
2. apply: a fixed pool of worker tasks runs the write operation per group;
3. aggregate: workers report finished group sizes to a single aggregator task
   that owns the running counter and logs progress.

The first failing operation stops the pipeline: no further groups are started,
the source is no longer read, and once in-flight groups are done the error is
raised to the caller.
"""

from __future__ import annotations

import asyncio
from typing import (
    AsyncIterable,
    Awaitable,
    Callable,
    List,
    Optional,
    Sequence,
)

from history_migration.domain.models import AccountHistoryRecord, group_by_partition
from history_migration.utils.logging import get_logger
from history_migration.utils.profiler import Stopwatch

Group = List[AccountHistoryRecord]
GroupOperation = Callable[[Group], Awaitable[object]]
Predicate = Callable[[AccountHistoryRecord], bool]

DEFAULT_MAX_PARALLELISM = 10
DEFAULT_PROGRESS_STEP = 1000

log = get_logger(__name__)

_DONE = object()


class MigrationPipeline:
    """
    Drain a paged read into a bounded-parallel write operation.

    Parameters
    ----------
    operation : callable
        Coroutine function applied to every partition group.
    name : str
        Prefix for log lines (usually the environment name).
    predicate : callable, optional
        Records for which it returns False are skipped.
    max_parallelism : int
        Maximum number of groups processed at once.
    progress_step : int
        A progress line is logged every time the counter crosses a multiple
        of this value.
    stopwatch : Stopwatch, optional
        Timer used for elapsed time and throughput; restarted by `run`.
    """

    def __init__(
        self,
        operation: GroupOperation,
        *,
        name: str = "",
        predicate: Optional[Predicate] = None,
        max_parallelism: int = DEFAULT_MAX_PARALLELISM,
        progress_step: int = DEFAULT_PROGRESS_STEP,
        stopwatch: Optional[Stopwatch] = None,
    ) -> None:
        if max_parallelism < 1:
            raise ValueError(f"max_parallelism must be >= 1, got {max_parallelism}")
        if progress_step < 1:
            raise ValueError(f"progress_step must be >= 1, got {progress_step}")
        self.operation = operation
        self.name = name
        self.predicate = predicate
        self.max_parallelism = max_parallelism
        self.progress_step = progress_step
        self.stopwatch = stopwatch or Stopwatch()
        self.completed = 0
        self.error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def _prefixed(self, message: str) -> str:
        return f"{self.name}: {message}" if self.name else message

    def _log(self, message: str) -> None:
        log.info(self._prefixed(message), extra={"env": self.name})

    def _progress(self) -> str:
        return (
            f"Completed: {self.completed}; elapsed: {self.stopwatch.elapsed}, "
            f"speed: {self.stopwatch.per_minute(self.completed):.2f}/min"
        )

    def _fail(self, exc: BaseException) -> None:
        if self.error is None:
            self.error = exc
            log.error(
                self._prefixed(f"pipeline failed: {exc!r}"),
                exc_info=exc,
                extra={"env": self.name},
            )

    def _split(self, page: Sequence[AccountHistoryRecord]) -> List[Group]:
        if self.predicate is not None:
            page = [record for record in page if self.predicate(record)]
        return group_by_partition(page)

    async def _worker(self, work: asyncio.Queue, results: asyncio.Queue) -> None:
        while True:
            group = await work.get()
            try:
                if group is _DONE:
                    return
                if self.failed:
                    continue
                try:
                    await self.operation(group)
                except Exception as exc:  # noqa: BLE001 - first error is kept and re-raised by run()
                    self._fail(exc)
                else:
                    await results.put(len(group))
            finally:
                work.task_done()

    async def _aggregate(self, results: asyncio.Queue) -> None:
        while True:
            size = await results.get()
            if size is _DONE:
                return
            previous = self.completed
            self.completed += size
            if self.completed // self.progress_step != previous // self.progress_step:
                self._log(self._progress())

    async def run(self, pages: AsyncIterable[Sequence[AccountHistoryRecord]]) -> int:
        """
        Consume `pages` and apply the operation to every partition group.

        Returns
        -------
        int
            Number of records whose group operation succeeded.

        Raises
        ------
        Exception
            The first error raised by the operation or by the source, after all
            in-flight groups have finished.
        """
        self.completed = 0
        self.error = None
        self.stopwatch.restart()

        work: asyncio.Queue = asyncio.Queue(maxsize=self.max_parallelism)
        results: asyncio.Queue = asyncio.Queue()
        workers = [
            asyncio.create_task(self._worker(work, results))
            for _ in range(self.max_parallelism)
        ]
        aggregator = asyncio.create_task(self._aggregate(results))

        try:
            async for page in pages:
                if self.failed:
                    break
                for group in self._split(page):
                    if self.failed:
                        break
                    await work.put(group)
        except Exception as exc:  # noqa: BLE001 - source errors stop the pipeline like write errors
            self._fail(exc)
        finally:
            aclose = getattr(pages, "aclose", None)
            if aclose is not None and self.failed:
                await aclose()
            for _ in workers:
                await work.put(_DONE)
            await asyncio.gather(*workers)
            await results.put(_DONE)
            await aggregator

        if self.error is not None:
            raise self.error

        self._log(f"Fin. {self._progress()}")
        return self.completed


__all__ = [
    "DEFAULT_MAX_PARALLELISM",
    "DEFAULT_PROGRESS_STEP",
    "MigrationPipeline",
]
