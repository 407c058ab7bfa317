from __future__ import annotations

import random
from typing import Sequence


def compute_backoff(
    attempt: int, base: float = 0.5, factor: float = 2.0, jitter: float = 0.25, cap: float = 30.0
) -> float:
    """Compute exponential backoff with jitter for the given 1-based attempt."""
    delay = min(cap, base * factor ** max(0, attempt - 1))
    return delay + random.uniform(0, jitter)


def ladder_delay(delays: Sequence[float], retry_count: int) -> float:
    """Pick the delay for ``retry_count`` from a backoff ladder.

    The ladder is indexed by ``retry_count - 1`` and the last rung repeats
    once the ladder is exhausted.
    """
    if not delays:
        raise ValueError("Backoff ladder must not be empty")
    index = min(max(retry_count - 1, 0), len(delays) - 1)
    return float(delays[index])
