"""
Delay Scheduler — spread N jobs over a day, then fold into the queue's
delay ceiling.

    ideal_i  = floor(i * 86400 / max(1, n - 1))
    delay_i  = min(D, (ideal_i mod D) + jitter)

The channel only accepts delays up to D seconds (900 by default), so the
ideal offset is mapped onto the current D-second window and a small jitter
keeps many jobs from landing on the same second.
"""
from __future__ import annotations

import random
from typing import Callable, Optional

SECONDS_PER_DAY = 24 * 60 * 60
DEFAULT_MAX_DELAY_SECONDS = 900
DEFAULT_JITTER_SECONDS = 5

JitterFn = Callable[[], int]


def spread_delays(n: int) -> list[int]:
    """Linear offsets across the day for ``n`` records."""
    if n <= 0:
        return []
    if n == 1:
        return [0]
    span = n - 1
    return [(i * SECONDS_PER_DAY) // span for i in range(n)]


def small_jitter(max_seconds: int = DEFAULT_JITTER_SECONDS,
                 rng: Optional[random.Random] = None) -> int:
    """Uniform integer jitter in [0, max_seconds]."""
    if max_seconds <= 0:
        return 0
    return (rng or random).randint(0, max_seconds)


def fold_delay(ideal: int, max_delay: int = DEFAULT_MAX_DELAY_SECONDS, jitter: int = 0) -> int:
    if max_delay <= 0:
        raise ValueError("max_delay must be positive")
    return min(max_delay, (ideal % max_delay) + max(0, jitter))


def schedule_delays(
    n: int,
    max_delay: int = DEFAULT_MAX_DELAY_SECONDS,
    jitter_fn: Optional[JitterFn] = None,
) -> list[int]:
    """Folded, jittered delay for each of ``n`` records, in batch order."""
    if jitter_fn is None:
        jitter_fn = lambda: 0  # noqa: E731
    return [fold_delay(ideal, max_delay, jitter_fn()) for ideal in spread_delays(n)]
