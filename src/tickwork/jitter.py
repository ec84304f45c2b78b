"""Jittered scheduling helpers.

Tasks sharing an interval would otherwise all fire on the same tick. Every
next-run timestamp gets a random offset of 10-50% of the interval on top of
the interval itself.
"""

from __future__ import annotations

import math
import random
import time


def now_ms() -> int:
    """Current wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


def random_int(lo: float, hi: float) -> int:
    """Random integer in ``[ceil(lo), floor(hi))``.

    Collapses to ``ceil(lo)`` when the range holds no integer.
    """
    low = math.ceil(lo)
    high = math.floor(hi)
    if high <= low:
        return low
    return random.randrange(low, high)


def naturalized_next_run(interval: int, now: int | None = None) -> int:
    """
    Compute the next run timestamp for a task with the given base interval.

    Args:
        interval: Base interval in milliseconds (> 0).
        now: Reference timestamp in ms. Defaults to the current time.

    Returns:
        ``now + interval + random_int(interval * 0.1, interval * 0.5)``
    """
    if now is None:
        now = now_ms()
    return now + interval + random_int(interval * 0.1, interval * 0.5)
