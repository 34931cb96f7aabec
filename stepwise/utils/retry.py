from __future__ import annotations

import asyncio
import random


def compute_backoff(
    attempt: int, delay_ms: float, backoff: float = 1.0, jitter_ms: float = 0.0
) -> float:
    """Compute the delay in milliseconds before retry number ``attempt``.

    With the default ``backoff`` of 1.0 every retry waits ``delay_ms``; larger
    factors grow the delay exponentially.
    """
    delay = delay_ms * backoff ** max(attempt - 1, 0)
    if jitter_ms:
        delay += random.uniform(0, jitter_ms)
    return delay


async def schedule_retry(
    attempt: int, delay_ms: float, backoff: float = 1.0, jitter_ms: float = 0.0
) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, delay_ms, backoff, jitter_ms)
    if delay > 0:
        await asyncio.sleep(delay / 1000)
