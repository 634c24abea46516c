"""
Timing and resource measurement for migration phases.

- `Stopwatch`: restartable wall-clock timer used for progress lines.
- `profile_block`: context manager measuring a whole phase (duration plus
  peak RSS sampled by a background thread via psutil).

Usage:
    from history_migration.utils.profiler import Stopwatch, profile_block

    with profile_block("convert") as stats:
        await driver.convert()

    print(stats.duration_seconds, stats.peak_rss_bytes)
"""

from __future__ import annotations

import contextlib
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Generator, Optional

import psutil


class Stopwatch:
    """Monotonic wall-clock timer that can be restarted."""

    def __init__(self, clock: Callable[[], float] = time.perf_counter) -> None:
        self._clock = clock
        self._start = clock()

    def restart(self) -> None:
        self._start = self._clock()

    @property
    def elapsed_seconds(self) -> float:
        return self._clock() - self._start

    @property
    def elapsed(self) -> timedelta:
        return timedelta(seconds=self.elapsed_seconds)

    def per_minute(self, count: int) -> float:
        """Throughput of `count` items over the elapsed time, in items/minute."""
        minutes = self.elapsed_seconds / 60.0
        return count / minutes if minutes > 0 else 0.0


@dataclass
class ProfileStats:
    """
    Container for profiling measurements.
    """

    label: str
    start_ts: float = field(default=0.0)
    end_ts: float = field(default=0.0)
    duration_seconds: float = field(default=0.0)
    peak_rss_bytes: Optional[int] = field(default=None)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def elapsed(self) -> timedelta:
        return timedelta(seconds=self.duration_seconds)


@contextlib.contextmanager
def profile_block(
    label: str, sample_interval_ms: int = 200
) -> Generator[ProfileStats, None, None]:
    """
    Context manager measuring a block's duration and peak RSS.

    Parameters
    ----------
    label : str
        Human-friendly label for the profiled block.
    sample_interval_ms : int
        Interval in milliseconds between RSS samples.
    """
    stats = ProfileStats(label=label)
    process = psutil.Process()
    peak_rss = process.memory_info().rss
    stop_sampling = threading.Event()

    def _sample_memory() -> None:
        nonlocal peak_rss
        while not stop_sampling.is_set():
            try:
                peak_rss = max(peak_rss, process.memory_info().rss)
            except psutil.Error:
                return
            stop_sampling.wait(timeout=sample_interval_ms / 1000.0)

    sampler = threading.Thread(target=_sample_memory, daemon=True)
    sampler.start()

    stats.start_ts = time.perf_counter()
    try:
        yield stats
    finally:
        stats.end_ts = time.perf_counter()
        stats.duration_seconds = stats.end_ts - stats.start_ts

        stop_sampling.set()
        sampler.join(timeout=1.0)
        stats.peak_rss_bytes = peak_rss if peak_rss > 0 else None


__all__ = ["ProfileStats", "Stopwatch", "profile_block"]
