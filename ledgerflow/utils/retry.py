from __future__ import annotations

import asyncio
import random
from typing import Optional


def compute_backoff(
    attempt: int, base: float = 0.5, cap: Optional[float] = None, jitter: float = 0.5
) -> float:
    """Compute capped exponential backoff with jitter."""
    delay = base * (2 ** attempt)
    if cap is not None:
        delay = min(delay, cap)
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 0.5, cap: Optional[float] = None) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base, cap=cap)
    await asyncio.sleep(delay)
