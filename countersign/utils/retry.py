from __future__ import annotations

import random
import time


def compute_backoff(
    attempt: int, base: float = 0.005, jitter: float = 0.005, cap: float = 0.25
) -> float:
    """Compute capped exponential backoff with jitter."""
    delay = min(base * (2 ** attempt), cap)
    return delay + random.uniform(0, jitter)


def sleep_before_retry(attempt: int, base: float = 0.005) -> None:
    """Sleep for computed backoff delay before retrying."""
    if base <= 0:
        return
    time.sleep(compute_backoff(attempt, base=base, jitter=base))
