"""Batch pacing for campaign sends."""

import math
from datetime import timedelta
from typing import Iterator, List, Sequence, TypeVar

T = TypeVar("T")


def calculate_wait_time(rate_limit_per_minute: int, batch_size: int) -> timedelta:
    """
    Pause to insert after a batch so the average send rate stays at
    ``rate_limit_per_minute``.

    A rate of zero or less disables pacing.
    """
    if rate_limit_per_minute is None or rate_limit_per_minute <= 0:
        return timedelta(0)
    seconds_per_message = 60.0 / rate_limit_per_minute
    return timedelta(seconds=batch_size * seconds_per_message)


def calculate_total_batches(total: int, batch_size: int) -> int:
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    if total <= 0:
        return 0
    return math.ceil(total / batch_size)


def partition(items: Sequence[T], batch_size: int) -> Iterator[List[T]]:
    """Yield consecutive slices of at most ``batch_size`` items, preserving order."""
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    for start in range(0, len(items), batch_size):
        yield list(items[start:start + batch_size])
