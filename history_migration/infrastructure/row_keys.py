"""
Chronologically ordered row keys for version 2 history entities.

Keys are the entry timestamp followed by a zero-padded disambiguator, e.g.
``2017-05-04 10:11:12.007``, so a lexical scan of a partition returns entries
in time order.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from history_migration.domain.models import AccountHistoryRecord

ROW_KEY_DATE_MASK = "%Y-%m-%d %H:%M:%S"
MIN_SUFFIX_WIDTH = 3

KeyFn = Callable[[AccountHistoryRecord, int, int], str]


def suffix_width(batch_size: int, max_attempts: int) -> int:
    """Digits needed so every sequence of every attempt pads to the same width."""
    highest = max(batch_size * max_attempts - 1, 0)
    return max(MIN_SUFFIX_WIDTH, len(str(highest)))


def date_row_key(date: datetime, sequence: int, width: int = MIN_SUFFIX_WIDTH) -> str:
    """
    Format `date` with the ordering suffix `sequence`, zero-padded to `width`.

    Raises
    ------
    ValueError
        If `sequence` is negative or needs more than `width` digits; a longer
        suffix would sort before shorter ones.
    """
    if sequence < 0:
        raise ValueError(f"sequence must be non-negative, got {sequence}")
    if len(str(sequence)) > width:
        raise ValueError(f"sequence {sequence} does not fit a {width}-digit suffix")
    return f"{date.strftime(ROW_KEY_DATE_MASK)}.{sequence:0{width}d}"


def make_date_key_fn(batch_size: int, max_attempts: int = 5) -> KeyFn:
    """
    Build a key function for a batch of `batch_size` records.

    The retry index is folded into the suffix, so every attempt at the batch
    uses a fresh, non-overlapping block of sequence numbers. The suffix width
    covers all `max_attempts` blocks.
    """
    width = suffix_width(batch_size, max_attempts)

    def key_fn(record: AccountHistoryRecord, retry_index: int, item_index: int) -> str:
        return date_row_key(record.date, retry_index * batch_size + item_index, width)

    return key_fn


__all__ = ["KeyFn", "ROW_KEY_DATE_MASK", "date_row_key", "make_date_key_fn", "suffix_width"]
