from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable

from ..constants import DEFAULT_BACKOFF_BASE, DEFAULT_BACKOFF_CAP, DEFAULT_BACKOFF_FACTOR

Sleep = Callable[[float], Awaitable[None]]


def compute_backoff(
    attempt: int,
    base: float = DEFAULT_BACKOFF_BASE,
    factor: float = DEFAULT_BACKOFF_FACTOR,
    cap: float = DEFAULT_BACKOFF_CAP,
    jitter: float = 0.0,
) -> float:
    """Compute capped exponential backoff for the retry after ``attempt``.

    ``attempt`` is 1-based: the delay after the first failure is ``base``.
    """
    delay = min(base * factor ** max(attempt - 1, 0), cap)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


async def schedule_retry(
    attempt: int,
    base: float = DEFAULT_BACKOFF_BASE,
    factor: float = DEFAULT_BACKOFF_FACTOR,
    cap: float = DEFAULT_BACKOFF_CAP,
    jitter: float = 0.0,
    sleep: Sleep = asyncio.sleep,
) -> float:
    """Sleep for the computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base, factor=factor, cap=cap, jitter=jitter)
    await sleep(delay)
    return delay
